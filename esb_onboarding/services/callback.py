"""
Meta redirect handling.

After the hosted signup, Meta (or the backend, for the stored-callback
variant) sends the browser back with one of:

    ?code=...&state=...                  legacy, processed synchronously
    ?callback_received=true&state=...    code already stored server-side
    ?error=...&error_description=...     failure

The parameters are consumed once and then stripped from the URL.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from esb_onboarding.integrations.backend import EsbBackendClient
from esb_onboarding.schemas.esb import CallbackResult
from esb_onboarding.services.errors import OnboardingError, callback_error, classify

logger = logging.getLogger(__name__)

CALLBACK_PARAMS = ("code", "state", "error", "error_description", "callback_received")

_TRUTHY = {"1", "true", "yes"}


@dataclass(frozen=True)
class PendingCallback:
    code: Optional[str] = None
    state: Optional[str] = None
    callback_received: bool = False
    error: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.code or "stored", self.state)

    @property
    def is_error(self) -> bool:
        return bool(self.error)

    @property
    def is_stored(self) -> bool:
        return not self.code and self.callback_received


def parse_callback(query: Mapping[str, str]) -> Optional[PendingCallback]:
    """Extract callback parameters; None when the query carries no callback."""
    def get(name: str) -> Optional[str]:
        value = query.get(name)
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    error = get("error")
    if error:
        return PendingCallback(error=error, error_description=get("error_description"))

    code = get("code")
    state = get("state")
    received = (get("callback_received") or "").lower() in _TRUTHY
    if state and (code or received):
        return PendingCallback(code=code, state=state, callback_received=received)
    return None


def strip_callback_params(url: str) -> str:
    """Remove the consumed callback parameters, keeping everything else."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in CALLBACK_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


@dataclass
class CallbackOutcome:
    handled: bool
    status: Optional[str] = None
    info: Optional[str] = None
    error: Optional[OnboardingError] = None
    in_progress: bool = False
    result: Optional[CallbackResult] = None


class CallbackResolver:
    """Processes each code/state pair at most once per mounted session."""

    def __init__(self, backend: EsbBackendClient):
        self._backend = backend
        self._consumed: set = set()

    def already_consumed(self, pending: PendingCallback) -> bool:
        return pending.key in self._consumed

    async def resolve(self, pending: Optional[PendingCallback]) -> CallbackOutcome:
        if pending is None:
            return CallbackOutcome(handled=False)

        if pending.is_error:
            logger.warning("Meta redirected with error=%s (%s)", pending.error, pending.error_description)
            return CallbackOutcome(
                handled=True, error=callback_error(pending.error, pending.error_description)
            )

        if self.already_consumed(pending):
            logger.info("Callback for state=%s already processed; ignoring", pending.state)
            return CallbackOutcome(handled=False)
        self._consumed.add(pending.key)

        try:
            if pending.is_stored:
                result = await self._backend.process_stored_callback()
            else:
                result = await self._backend.process_callback(pending.code, pending.state)
        except Exception as e:
            error = classify(e, fallback="Failed to process Meta callback")
            logger.warning("Callback processing failed (%s): %s", error.kind.value, error.detail)
            return CallbackOutcome(handled=True, error=error)

        if not result.success:
            # Backend accepted the callback but is still working on it
            return CallbackOutcome(
                handled=True,
                status=result.status,
                info=result.message or "Processing...",
                in_progress=True,
                result=result,
            )

        status = result.status or "token_exchanged"
        return CallbackOutcome(
            handled=True,
            status=status,
            info=result.message or "Authorization confirmed.",
            result=result,
        )
