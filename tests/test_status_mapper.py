"""Tests for backend status -> step mapping (esb_onboarding/services/status_mapper.py)"""
import pytest

from esb_onboarding.services.status_mapper import (
    STEP_ORDER,
    Step,
    is_terminal,
    map_status_to_step,
    step_index,
)


@pytest.mark.parametrize("status,expected", [
    ("not_started", Step.START),
    ("signup_initiated", Step.WAITING_CALLBACK),
    ("code_received", Step.WAITING_CALLBACK),
    ("token_exchanged", Step.BUSINESS_VERIFY),
    ("business_verified", Step.PHONE_REGISTER),
    ("phone_registered", Step.OTP_VERIFY),
    ("otp_sent", Step.OTP_VERIFY),
    ("otp_verified", Step.SYSTEM_USER),
    ("system_user_created", Step.ACTIVATE),
    ("waba_activated", Step.COMPLETE),
    ("completed", Step.COMPLETE),
    ("failed", Step.FAILED),
])
def test_known_statuses(status, expected):
    assert map_status_to_step(status) == expected


@pytest.mark.parametrize("status", [None, "", "something_new", "WABA-ACTIVATED", 42, {"status": "otp_sent"}, []])
def test_unknown_or_missing_status_maps_to_start(status):
    assert map_status_to_step(status) == Step.START


def test_status_is_normalized_before_lookup():
    assert map_status_to_step("  OTP_SENT ") == Step.OTP_VERIFY


def test_result_is_always_a_step():
    for value in ["x", None, 0, "failed", "waba_activated"]:
        assert isinstance(map_status_to_step(value), Step)


def test_waba_activate_alias():
    assert Step("waba_activate") is Step.ACTIVATE
    with pytest.raises(ValueError):
        Step("nonsense")


def test_terminal_steps():
    assert is_terminal(Step.COMPLETE)
    assert is_terminal(Step.FAILED)
    assert not any(is_terminal(step) for step in STEP_ORDER if step != Step.COMPLETE)


def test_step_index_follows_display_order():
    assert step_index(Step.START) == 0
    assert step_index(Step.COMPLETE) == len(STEP_ORDER) - 1
    assert step_index(Step.FAILED) == -1
