"""Backend ESB status -> client step mapping."""
from enum import Enum
from typing import Any, Dict


class Step(str, Enum):
    START = "start"
    WAITING_CALLBACK = "waiting_callback"
    BUSINESS_VERIFY = "business_verify"
    PHONE_REGISTER = "phone_register"
    OTP_VERIFY = "otp_verify"
    SYSTEM_USER = "system_user"
    ACTIVATE = "activate"
    COMPLETE = "complete"
    FAILED = "failed"

    @classmethod
    def _missing_(cls, value):
        # Older screens called the activation step "waba_activate"
        if value == "waba_activate":
            return cls.ACTIVATE
        return None


STEP_ORDER = [
    Step.START,
    Step.WAITING_CALLBACK,
    Step.BUSINESS_VERIFY,
    Step.PHONE_REGISTER,
    Step.OTP_VERIFY,
    Step.SYSTEM_USER,
    Step.ACTIVATE,
    Step.COMPLETE,
]

TERMINAL_STEPS = frozenset({Step.COMPLETE, Step.FAILED})

# Workspace.esbFlow.status values reported by the backend
_STATUS_MAP: Dict[str, Step] = {
    "not_started": Step.START,
    "signup_initiated": Step.WAITING_CALLBACK,
    "code_received": Step.WAITING_CALLBACK,
    "token_exchanged": Step.BUSINESS_VERIFY,
    "business_verified": Step.PHONE_REGISTER,
    "phone_registered": Step.OTP_VERIFY,
    "otp_sent": Step.OTP_VERIFY,
    "otp_verified": Step.SYSTEM_USER,
    "system_user_created": Step.ACTIVATE,
    "waba_activated": Step.COMPLETE,
    "completed": Step.COMPLETE,
    "failed": Step.FAILED,
}


def map_status_to_step(status: Any) -> Step:
    """
    Map a backend-reported status to the smallest step at least as advanced.

    Never raises: missing, unknown or non-string input maps to START.
    """
    if not isinstance(status, str):
        return Step.START
    return _STATUS_MAP.get(status.strip().lower(), Step.START)


def is_terminal(step: Step) -> bool:
    return step in TERMINAL_STEPS


def step_index(step: Step) -> int:
    """Position in STEP_ORDER for progress display; -1 for FAILED."""
    try:
        return STEP_ORDER.index(step)
    except ValueError:
        return -1
