"""
Embedded Signup onboarding orchestrator.

Drives one tenant session from "no WhatsApp connection" to "WABA activated":

    start -> waiting_callback -> business_verify -> phone_register
          -> otp_verify -> system_user -> activate -> complete

The orchestrator only sequences backend calls and maps their results to a
step; the backend remains the system of record. Every backend failure is
caught here, classified and stored on the session; nothing is re-raised to
the caller.
"""
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from esb_onboarding.config import Settings, settings as default_settings
from esb_onboarding.integrations.backend import EsbBackendClient, Unauthorized
from esb_onboarding.schemas.esb import ErrorOut, EsbStatus, LaunchInstruction, SessionOut
from esb_onboarding.services.callback import CallbackOutcome, CallbackResolver, parse_callback
from esb_onboarding.services.errors import (
    FatalError,
    OnboardingError,
    PollTimeoutExceeded,
    RestartRequiredError,
    ValidationError,
    classify,
)
from esb_onboarding.services.polling import PollingGuard
from esb_onboarding.services.status_mapper import (
    STEP_ORDER,
    Step,
    map_status_to_step,
    step_index,
)

logger = logging.getLogger(__name__)

BUSINESS_VERIFY_FAILED_MESSAGE = "Business verification failed. Please contact support."

POLL_TIMEOUT_MESSAGE = (
    "WhatsApp setup is taking longer than expected. "
    "Please check the status again or contact support."
)


class LaunchMode(str, Enum):
    REDIRECT = "redirect"
    POPUP = "popup"


@dataclass
class OnboardingSession:
    step: Step = Step.START
    backend_status: Optional[str] = None
    esb_data: dict = field(default_factory=dict)
    error: Optional[OnboardingError] = None
    info: Optional[str] = None
    loading: bool = False
    poll_timeout_exceeded: bool = False
    launch: Optional[LaunchInstruction] = None
    phone: Optional[str] = None

    def apply_status(self, status: Optional[str]) -> None:
        """Record a backend status; the step always follows from it."""
        self.backend_status = status
        self.step = map_status_to_step(status)


# ---------------------------------------------------------------------------
# Launch strategies: how the user is sent to Meta and how we learn they're back
# ---------------------------------------------------------------------------

class Launcher:
    mode: LaunchMode
    info: str

    def launch(self, session: OnboardingSession, url: str) -> None:
        session.launch = LaunchInstruction(mode=self.mode.value, url=url)
        session.info = self.info


class RedirectLauncher(Launcher):
    """Full-page redirect; resumption arrives through the callback query string."""
    mode = LaunchMode.REDIRECT
    info = "Redirecting to Meta. You will be sent back here automatically."


class PopupLauncher(Launcher):
    """New browsing context; the main view keeps its session and learns of completion by polling."""
    mode = LaunchMode.POPUP
    info = (
        "WhatsApp setup window opened. Complete the setup in the new window "
        "and it will redirect back here automatically."
    )


LAUNCHERS: Dict[LaunchMode, Launcher] = {
    LaunchMode.REDIRECT: RedirectLauncher(),
    LaunchMode.POPUP: PopupLauncher(),
}


@dataclass(frozen=True)
class _StepAction:
    name: str
    allowed_from: frozenset
    reached_status: str
    info: Optional[str]
    fallback: str


_START = _StepAction(
    "start",
    frozenset({Step.START, Step.WAITING_CALLBACK}),
    "signup_initiated",
    None,
    "Failed to start embedded signup",
)
_VERIFY_BUSINESS = _StepAction(
    "verify_business",
    frozenset({Step.BUSINESS_VERIFY}),
    "business_verified",
    "Business verified. Register the phone number WhatsApp should use.",
    "Failed to verify business",
)
_REGISTER_PHONE = _StepAction(
    "register_phone",
    frozenset({Step.PHONE_REGISTER}),
    "otp_sent",
    "OTP sent by WhatsApp/Meta. Enter the 6-digit code.",
    "Failed to register phone",
)
_RESEND_OTP = _StepAction(
    "resend_otp",
    frozenset({Step.OTP_VERIFY}),
    "otp_sent",
    "A new OTP has been sent to your WhatsApp number.",
    "Failed to resend OTP",
)
_VERIFY_OTP = _StepAction(
    "verify_otp",
    frozenset({Step.OTP_VERIFY}),
    "otp_verified",
    "Phone verified. Creating system user token next.",
    "Failed to verify OTP",
)
_CREATE_SYSTEM_USER = _StepAction(
    "create_system_user",
    frozenset({Step.SYSTEM_USER}),
    "system_user_created",
    "System user created. Activating WABA...",
    "Failed to create system user",
)
_ACTIVATE = _StepAction(
    "activate",
    frozenset({Step.ACTIVATE}),
    "waba_activated",
    "WABA activated. You can now send messages via Cloud API.",
    "Failed to activate WABA",
)

# Actions the view offers per step
_STEP_ACTIONS = {
    Step.START: ["start"],
    Step.WAITING_CALLBACK: ["start", "check_status"],
    Step.BUSINESS_VERIFY: ["verify_business"],
    Step.PHONE_REGISTER: ["register_phone"],
    Step.OTP_VERIFY: ["verify_otp", "resend_otp"],
    Step.SYSTEM_USER: ["create_system_user"],
    Step.ACTIVATE: ["activate"],
    Step.COMPLETE: [],
    Step.FAILED: ["restart"],
}


class OnboardingOrchestrator:
    def __init__(
        self,
        backend: EsbBackendClient,
        config: Settings = default_settings,
        launch_mode: Optional[LaunchMode] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._backend = backend
        self._config = config
        self.launch_mode = LaunchMode(launch_mode or config.esb_launch_mode)
        self._launcher = LAUNCHERS[self.launch_mode]
        self._resolver = CallbackResolver(backend)
        self._poller = PollingGuard(
            interval=config.esb_poll_interval_seconds,
            max_duration=config.esb_poll_max_duration_seconds,
            on_tick=self._poll_tick,
            is_terminal=self._poll_should_stop,
            on_timeout=self._poll_timed_out,
            clock=clock,
            sleep=sleep,
        )
        self._otp_pattern = re.compile(r"[0-9]{%d}" % config.otp_length)
        self._busy = False
        self._closed = False
        self.session = OnboardingSession()

    @property
    def poller(self) -> PollingGuard:
        return self._poller

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def authenticated(self) -> bool:
        return self._backend.auth.is_authenticated

    # --- lifecycle -------------------------------------------------------

    async def mount(self, query: Optional[Mapping[str, str]] = None) -> OnboardingSession:
        """
        Page mount: resolve any callback first, then load status, then poll.

        Callback resolution completes before the first status fetch so that a
        poll can never report `start` for a callback still being processed.
        """
        pending = parse_callback(query or {})
        if pending is not None and pending.is_stored:
            self.session.step = Step.WAITING_CALLBACK
            self.session.info = "Callback received. Processing your WhatsApp Business Account setup..."

        outcome = await self.resolve_callback(pending)
        if not outcome.handled:
            await self._guarded_refresh(report_errors=False)
        elif self.session.step == Step.BUSINESS_VERIFY:
            await self.verify_business()

        if not self._closed and self.session.step == Step.WAITING_CALLBACK:
            self._start_polling()
        return self.session

    def close(self) -> None:
        """Navigation away: stop polling and ignore any late results."""
        self._closed = True
        self._poller.cancel()

    # --- callback ---------------------------------------------------------

    async def resolve_callback(self, pending) -> CallbackOutcome:
        if pending is None or self._closed:
            return CallbackOutcome(handled=False)
        if self._busy:
            logger.info("Callback resolution skipped: another call is in flight")
            return CallbackOutcome(handled=False)

        self._busy = True
        self.session.loading = True
        try:
            outcome = await self._resolver.resolve(pending)
        finally:
            self._busy = False
            self.session.loading = False

        if self._closed:
            return outcome
        self._apply_callback(outcome)
        return outcome

    def _apply_callback(self, outcome: CallbackOutcome) -> None:
        if not outcome.handled:
            return
        s = self.session
        if outcome.error is not None:
            self._set_error(outcome.error)
            return
        if outcome.in_progress:
            if outcome.status:
                s.apply_status(outcome.status)
            else:
                s.step = Step.WAITING_CALLBACK
            s.info = outcome.info
            return

        s.apply_status(outcome.status)
        s.info = outcome.info
        s.error = None
        if outcome.result is not None:
            s.esb_data.update(
                outcome.result.model_dump(include={"waba_id", "phone_number_id"}, exclude_none=True)
            )
        logger.info("Callback processed; backend status %s -> step %s", outcome.status, s.step.value)

    # --- step operations ---------------------------------------------------

    async def start(self) -> OnboardingSession:
        def on_success(result) -> None:
            self.session.poll_timeout_exceeded = False
            self._launcher.launch(self.session, result.url)
            self._start_polling()

        await self._run_step(_START, self._backend.start, on_success=on_success)
        return self.session

    async def verify_business(self) -> OnboardingSession:
        """
        Confirm Meta shared both a business account and a WABA.

        The backend links them while exchanging the code, so this only reads
        the status back; it runs automatically after a successful callback.
        """
        async def call() -> EsbStatus:
            status = await self._backend.status()
            if not (status.business_account_id and status.waba_id):
                raise FatalError(BUSINESS_VERIFY_FAILED_MESSAGE, detail=status.status)
            return status

        def on_success(status: EsbStatus) -> None:
            self.session.esb_data = status.model_dump(exclude={"raw"})

        await self._run_step(_VERIFY_BUSINESS, call, on_success=on_success)
        return self.session

    async def register_phone(self, phone: str) -> OnboardingSession:
        phone = (phone or "").strip()

        def validate() -> None:
            if len(phone) < self._config.phone_min_length:
                raise ValidationError(
                    "Enter a valid phone number with country code (e.g., +14155550123)"
                )

        def on_success(_result) -> None:
            self.session.phone = phone

        await self._run_step(
            _REGISTER_PHONE,
            lambda: self._backend.register_phone(phone),
            validate=validate,
            on_success=on_success,
        )
        return self.session

    async def resend_otp(self) -> OnboardingSession:
        phone = self.session.phone

        def validate() -> None:
            if not phone:
                raise ValidationError("Register a phone number before requesting a new OTP")

        await self._run_step(
            _RESEND_OTP, lambda: self._backend.register_phone(phone), validate=validate
        )
        return self.session

    async def verify_otp(self, code: str) -> OnboardingSession:
        code = (code or "").strip()

        def validate() -> None:
            if not self._otp_pattern.fullmatch(code):
                raise ValidationError(
                    f"Enter the {self._config.otp_length}-digit OTP sent by WhatsApp"
                )

        await self._run_step(_VERIFY_OTP, lambda: self._backend.verify_otp(code), validate=validate)
        return self.session

    async def create_system_user(self) -> OnboardingSession:
        await self._run_step(_CREATE_SYSTEM_USER, self._backend.create_system_user)
        return self.session

    async def activate(self) -> OnboardingSession:
        def on_success(result) -> None:
            self.session.esb_data = result.model_dump(exclude={"raw"})

        await self._run_step(_ACTIVATE, self._backend.activate, on_success=on_success)
        return self.session

    async def check_status(self) -> OnboardingSession:
        """Manual status check, offered after a poll timeout."""
        if self._closed:
            return self.session
        if self._busy:
            logger.info("check_status ignored: another call is in flight")
            return self.session

        ok = await self._guarded_refresh(report_errors=True)

        if ok and not self._closed:
            if isinstance(self.session.error, PollTimeoutExceeded):
                self.session.error = None
            self.session.poll_timeout_exceeded = False
            if self.session.step == Step.WAITING_CALLBACK:
                self._start_polling()
        return self.session

    def restart(self) -> OnboardingSession:
        """User-initiated return to `start`, valid from any step."""
        if self._busy:
            logger.info("restart ignored: another call is in flight")
            return self.session
        self._reset_to_start()
        self.session.error = None
        self.session.info = None
        self.session.phone = None
        return self.session

    # --- status -------------------------------------------------------------

    async def _guarded_refresh(self, report_errors: bool, show_loading: bool = True) -> bool:
        # Status fetches hold the same in-flight guard as step operations
        if self._busy:
            return False
        self._busy = True
        if show_loading:
            self.session.loading = True
        try:
            return await self.refresh_status(report_errors=report_errors)
        finally:
            self._busy = False
            if show_loading:
                self.session.loading = False

    async def refresh_status(self, report_errors: bool = True) -> bool:
        try:
            status = await self._backend.status()
        except Exception as e:
            if self._closed:
                return False
            if isinstance(e, Unauthorized):
                self._backend.auth.invalidate()
            error = classify(e, fallback="Failed to fetch ESB status")
            logger.warning("Status fetch failed (%s): %s", error.kind.value, error.detail)
            if report_errors:
                self.session.error = error
            return False

        if self._closed:
            logger.debug("Dropping status result for a closed session")
            return False
        self._apply_status(status)
        return True

    def _apply_status(self, status: EsbStatus) -> None:
        s = self.session
        previous = s.step
        s.apply_status(status.status)
        s.esb_data = status.model_dump(exclude={"raw"})

        if s.step == Step.COMPLETE:
            s.info = "WhatsApp Business is connected and ready."
            s.error = None
        elif s.step == Step.FAILED:
            reason = status.failure_reason or "An error occurred during setup"
            s.error = FatalError(f"Setup failed: {reason}", detail=status.failure_reason)
        elif status.status and s.step == Step.WAITING_CALLBACK:
            s.info = f"Current status: {status.status}"

        if previous != s.step:
            logger.info("Step %s -> %s (backend status %s)", previous.value, s.step.value, status.status)

    # --- polling -----------------------------------------------------------

    def _start_polling(self) -> None:
        self.session.poll_timeout_exceeded = False
        self._poller.start()

    def _poll_should_stop(self) -> bool:
        # Polling only covers the time the user spends in Meta's hosted flow;
        # terminal steps are never WAITING_CALLBACK
        return self._closed or self.session.step != Step.WAITING_CALLBACK

    async def _poll_tick(self) -> None:
        await self._guarded_refresh(report_errors=False, show_loading=False)

    def _poll_timed_out(self) -> None:
        if self._closed:
            return
        self.session.poll_timeout_exceeded = True
        self.session.error = PollTimeoutExceeded(POLL_TIMEOUT_MESSAGE)

    # --- internals -----------------------------------------------------------

    async def _run_step(
        self,
        action: _StepAction,
        call: Callable[[], Awaitable[Any]],
        validate: Optional[Callable[[], None]] = None,
        on_success: Optional[Callable[[Any], None]] = None,
    ) -> None:
        if self._closed:
            return
        if self._busy:
            logger.info("%s ignored: another call is in flight", action.name)
            return

        s = self.session
        try:
            if s.step not in action.allowed_from:
                raise ValidationError(
                    f"This action is not available at the '{s.step.value}' step."
                )
            if validate is not None:
                validate()
        except ValidationError as e:
            s.error = e
            return

        self._busy = True
        s.loading = True
        s.error = None
        try:
            result = await call()
        except Exception as e:
            if not self._closed:
                self._handle_failure(action, e)
            return
        finally:
            self._busy = False
            s.loading = False

        if self._closed:
            logger.debug("Dropping %s result for a closed session", action.name)
            return

        previous = s.step
        s.apply_status(action.reached_status)
        s.error = None
        if action.info:
            s.info = action.info
        if on_success is not None:
            on_success(result)
        logger.info("%s succeeded: %s -> %s", action.name, previous.value, s.step.value)

    def _handle_failure(self, action: _StepAction, exc: Exception) -> None:
        if isinstance(exc, Unauthorized):
            self._backend.auth.invalidate()
        error = classify(exc, fallback=action.fallback)
        logger.warning("%s failed (%s): %s", action.name, error.kind.value, error.detail or error.message)
        self._set_error(error)

    def _set_error(self, error: OnboardingError) -> None:
        self.session.error = error
        if isinstance(error, RestartRequiredError):
            self._reset_to_start()

    def _reset_to_start(self) -> None:
        self._poller.cancel()
        s = self.session
        s.step = Step.START
        s.backend_status = None
        s.launch = None
        s.poll_timeout_exceeded = False

    # --- view -----------------------------------------------------------------

    def view(self) -> SessionOut:
        s = self.session
        actions = list(_STEP_ACTIONS.get(s.step, []))
        if s.poll_timeout_exceeded and "check_status" not in actions:
            actions.append("check_status")
        if isinstance(s.error, RestartRequiredError) and "restart" not in actions:
            actions.append("restart")
        return SessionOut(
            step=s.step.value,
            step_index=step_index(s.step),
            steps=[step.value for step in STEP_ORDER],
            backend_status=s.backend_status,
            esb_data=s.esb_data,
            error=ErrorOut(kind=s.error.kind.value, message=s.error.message) if s.error else None,
            info=s.info,
            loading=s.loading,
            polling=self._poller.running,
            poll_timeout_exceeded=s.poll_timeout_exceeded,
            launch=s.launch,
            actions=actions,
        )
