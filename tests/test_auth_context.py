"""Tests for the bearer token holder (esb_onboarding/auth/context.py)"""
import pytest

from esb_onboarding.auth.context import AuthContext, AuthContextBusy


def test_headers_include_bearer_token():
    auth = AuthContext("abc")
    assert auth.headers() == {"Content-Type": "application/json", "Authorization": "Bearer abc"}


def test_headers_without_token():
    auth = AuthContext()
    assert not auth.is_authenticated
    assert "Authorization" not in auth.headers()


def test_use_tracks_in_flight_requests():
    auth = AuthContext("abc")
    with auth.use() as token:
        assert token == "abc"
        assert auth.in_flight == 1
    assert auth.in_flight == 0


def test_set_token_refused_while_request_in_flight():
    auth = AuthContext("abc")
    with auth.use():
        with pytest.raises(AuthContextBusy):
            auth.set_token("other")
    auth.set_token("other")
    assert auth.token == "other"


def test_invalidate_is_deferred_until_requests_finish():
    auth = AuthContext("abc")
    with auth.use() as token:
        auth.invalidate()
        assert auth.token == "abc"
        assert token == "abc"
    assert auth.token is None


def test_invalidate_immediately_when_idle():
    auth = AuthContext("abc")
    auth.invalidate()
    assert auth.token is None
