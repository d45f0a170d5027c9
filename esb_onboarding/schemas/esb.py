from pydantic import BaseModel, Field
from typing import Any, Optional


# --- Canonical backend responses (normalized in esb_onboarding.integrations.backend) ---

class StartResult(BaseModel):
    url: str
    state: Optional[str] = None


class EsbStatus(BaseModel):
    status: Optional[str] = None
    failure_reason: Optional[str] = None
    waba_id: Optional[str] = None
    business_account_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None
    plan_limits: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)


class CallbackResult(BaseModel):
    success: bool
    status: Optional[str] = None
    message: Optional[str] = None
    waba_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ActivationResult(BaseModel):
    waba_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None
    verified_name: Optional[str] = None
    plan_limits: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)


# --- Session view exposed by the /esb router ---

class LaunchInstruction(BaseModel):
    mode: str  # redirect, popup
    url: str


class ErrorOut(BaseModel):
    kind: str  # validation, retryable, restart_required, poll_timeout, fatal
    message: str


class SessionOut(BaseModel):
    step: str
    step_index: int
    steps: list[str]
    backend_status: Optional[str] = None
    esb_data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorOut] = None
    info: Optional[str] = None
    loading: bool = False
    polling: bool = False
    poll_timeout_exceeded: bool = False
    launch: Optional[LaunchInstruction] = None
    actions: list[str] = Field(default_factory=list)


class PhoneIn(BaseModel):
    phone: str = ""


class OtpIn(BaseModel):
    otp: str = ""
