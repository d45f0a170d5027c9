"""
Onboarding error taxonomy and the backend error classifier.

Backend failures reach the client as exceptions whose message (or JSON `code`)
embeds a machine-readable marker such as CODE_EXPIRED. The classifier turns
them into one of a small set of user-actionable kinds. It is total: anything
it does not recognize becomes a FatalError carrying the raw message.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from esb_onboarding.integrations.backend import BackendError, BackendUnavailable, Unauthorized

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    RETRYABLE = "retryable"
    RESTART_REQUIRED = "restart_required"
    POLL_TIMEOUT = "poll_timeout"
    FATAL = "fatal"


class OnboardingError(Exception):
    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(OnboardingError):
    """Local input problem, raised before any network call."""
    kind = ErrorKind.VALIDATION


class RetryableError(OnboardingError):
    kind = ErrorKind.RETRYABLE


class RestartRequiredError(OnboardingError):
    """The flow must go back to the start (expired code, state mismatch, ...)."""
    kind = ErrorKind.RESTART_REQUIRED


class PollTimeoutExceeded(OnboardingError):
    kind = ErrorKind.POLL_TIMEOUT


class FatalError(OnboardingError):
    kind = ErrorKind.FATAL


@dataclass(frozen=True)
class _Rule:
    markers: tuple[str, ...]
    error_class: type
    message: str


RESTART_MESSAGE_NO_CALLBACK = (
    'No callback received. The Meta signup window may have been closed. '
    'Please click "Start WhatsApp Setup" again.'
)
RESTART_MESSAGE_CODE_EXPIRED = (
    "Your authorization code has expired (valid for 10 minutes only). Please restart the process."
)
RESTART_MESSAGE_STATE = "Security verification failed. Please restart the signup flow."
RESTART_MESSAGE_MISSING_PARAMS = "Invalid callback from Meta. Please restart the signup flow."
RATE_LIMIT_MESSAGE = "Too many attempts. Please wait a few minutes before trying again."
NETWORK_MESSAGE = "Network error while contacting the server. Please check your connection and try again."
SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."

# Order matters: the first rule whose marker appears in the code or message wins.
RULES: tuple[_Rule, ...] = (
    _Rule(("NO_CALLBACK_CODE",), RestartRequiredError, RESTART_MESSAGE_NO_CALLBACK),
    _Rule(("CODE_EXPIRED",), RestartRequiredError, RESTART_MESSAGE_CODE_EXPIRED),
    _Rule(("STATE_VERIFICATION_FAILED", "invalid_state"), RestartRequiredError, RESTART_MESSAGE_STATE),
    _Rule(("missing_params",), RestartRequiredError, RESTART_MESSAGE_MISSING_PARAMS),
    _Rule(
        ("INVALID_WABA_PHONE",),
        RestartRequiredError,
        "Failed to retrieve valid WABA or phone number from Meta. Please try again.",
    ),
    _Rule(
        ("PHONE_WABA_MISMATCH",),
        RestartRequiredError,
        "The phone number does not belong to your WABA. Please verify with Meta support.",
    ),
    _Rule(("Rate limit", "Too many"), RetryableError, RATE_LIMIT_MESSAGE),
    _Rule(("network", "timeout", "timed out"), RetryableError, NETWORK_MESSAGE),
)


def classify_text(text: str, fallback: str = "An unexpected error occurred.") -> OnboardingError:
    """Classify a raw error identifier or message."""
    text = text or ""
    lowered = text.lower()
    for rule in RULES:
        if any(marker.lower() in lowered for marker in rule.markers):
            return rule.error_class(rule.message, detail=text)
    return FatalError(text or fallback, detail=text or None)


def classify(exc: BaseException, fallback: str = "An unexpected error occurred.") -> OnboardingError:
    """
    Map any exception raised around a backend call to an OnboardingError.

    The JSON `code` is checked before the human message, HTTP 429 is treated
    as rate limiting even without a marker, and transport failures are retryable.
    """
    if isinstance(exc, OnboardingError):
        return exc

    if isinstance(exc, Unauthorized):
        return FatalError(SESSION_EXPIRED_MESSAGE, detail=str(exc))

    if isinstance(exc, BackendError):
        if exc.code:
            by_code = classify_text(exc.code)
            if not isinstance(by_code, FatalError):
                by_code.detail = exc.message
                return by_code
        by_message = classify_text(exc.message, fallback)
        if isinstance(by_message, FatalError):
            if exc.status_code == 429:
                return RetryableError(RATE_LIMIT_MESSAGE, detail=exc.message)
            if isinstance(exc, BackendUnavailable):
                return RetryableError(NETWORK_MESSAGE, detail=exc.message)
        return by_message

    logger.error("Unexpected error during onboarding call: %r", exc)
    return classify_text(str(exc), fallback)


def callback_error(error: str, description: Optional[str] = None) -> OnboardingError:
    """Classify an `error` parameter Meta put on the redirect URL."""
    if error == "invalid_state":
        return RestartRequiredError(RESTART_MESSAGE_STATE, detail=description)
    if error == "missing_params":
        return RestartRequiredError(RESTART_MESSAGE_MISSING_PARAMS, detail=description)
    return FatalError(f"Meta returned an error: {description or error}", detail=error)
