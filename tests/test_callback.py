"""Tests for Meta redirect handling (esb_onboarding/services/callback.py)"""
import asyncio

from esb_onboarding.integrations.backend import BackendError
from esb_onboarding.schemas.esb import CallbackResult
from esb_onboarding.services.callback import (
    CallbackResolver,
    PendingCallback,
    parse_callback,
    strip_callback_params,
)
from esb_onboarding.services.errors import FatalError, RestartRequiredError


def run(coro):
    """Helper to run an async coroutine synchronously in tests."""
    return asyncio.run(coro)


class TestParseCallback:
    def test_code_and_state(self):
        pending = parse_callback({"code": "abc", "state": "xyz"})
        assert pending == PendingCallback(code="abc", state="xyz")
        assert not pending.is_stored
        assert not pending.is_error

    def test_stored_callback(self):
        pending = parse_callback({"callback_received": "true", "state": "xyz"})
        assert pending.is_stored
        assert pending.key == ("stored", "xyz")

    def test_error_takes_precedence(self):
        pending = parse_callback({"error": "access_denied", "error_description": "Denied", "state": "xyz"})
        assert pending.is_error
        assert pending.error_description == "Denied"

    def test_missing_state_is_not_a_callback(self):
        assert parse_callback({"code": "abc"}) is None

    def test_callback_received_false_is_not_a_callback(self):
        assert parse_callback({"callback_received": "false", "state": "xyz"}) is None

    def test_unrelated_query(self):
        assert parse_callback({"tab": "whatsapp"}) is None
        assert parse_callback({}) is None


class TestStripCallbackParams:
    def test_removes_only_callback_params(self):
        url = "https://app.test/esb/callback?code=a&state=b&tab=2#top"
        assert strip_callback_params(url) == "https://app.test/esb/callback?tab=2#top"

    def test_removes_query_entirely_when_nothing_is_left(self):
        url = "https://app.test/esb/callback?callback_received=true&state=b"
        assert strip_callback_params(url) == "https://app.test/esb/callback"

    def test_url_without_query_is_unchanged(self):
        assert strip_callback_params("https://app.test/settings") == "https://app.test/settings"


class TestCallbackResolver:
    def test_code_is_processed_once(self, mock_backend):
        """
        GIVEN a code/state pair
        WHEN it is resolved twice on the same resolver
        THEN the backend is called only once and the second attempt is not handled
        """
        resolver = CallbackResolver(mock_backend)
        pending = PendingCallback(code="abc", state="xyz")

        first = run(resolver.resolve(pending))
        second = run(resolver.resolve(pending))

        assert first.handled
        assert first.status == "token_exchanged"
        assert first.info == "Authorization confirmed."
        assert not second.handled
        mock_backend.process_callback.assert_awaited_once_with("abc", "xyz")

    def test_stored_callback_uses_stored_endpoint(self, mock_backend):
        resolver = CallbackResolver(mock_backend)
        outcome = run(resolver.resolve(PendingCallback(state="xyz", callback_received=True)))

        assert outcome.handled
        mock_backend.process_stored_callback.assert_awaited_once()
        mock_backend.process_callback.assert_not_called()

    def test_error_params_never_call_backend(self, mock_backend):
        resolver = CallbackResolver(mock_backend)
        outcome = run(resolver.resolve(PendingCallback(error="invalid_state")))

        assert outcome.handled
        assert isinstance(outcome.error, RestartRequiredError)
        mock_backend.process_callback.assert_not_called()
        mock_backend.process_stored_callback.assert_not_called()

    def test_meta_error_is_fatal(self, mock_backend):
        resolver = CallbackResolver(mock_backend)
        outcome = run(resolver.resolve(PendingCallback(error="access_denied", error_description="User cancelled")))
        assert isinstance(outcome.error, FatalError)
        assert outcome.error.message == "Meta returned an error: User cancelled"

    def test_backend_still_processing(self, mock_backend):
        mock_backend.process_stored_callback.return_value = CallbackResult(success=False)
        resolver = CallbackResolver(mock_backend)

        outcome = run(resolver.resolve(PendingCallback(state="xyz", callback_received=True)))

        assert outcome.in_progress
        assert outcome.info == "Processing..."
        assert outcome.error is None

    def test_expired_code_requires_restart(self, mock_backend):
        mock_backend.process_callback.side_effect = BackendError(
            "Authorization code expired", code="CODE_EXPIRED", status_code=400
        )
        resolver = CallbackResolver(mock_backend)

        outcome = run(resolver.resolve(PendingCallback(code="abc", state="xyz")))

        assert outcome.handled
        assert isinstance(outcome.error, RestartRequiredError)
        assert resolver.already_consumed(PendingCallback(code="abc", state="xyz"))

    def test_nothing_to_resolve(self, mock_backend):
        outcome = run(CallbackResolver(mock_backend).resolve(None))
        assert not outcome.handled
