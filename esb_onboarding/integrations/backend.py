"""
Platform backend client for the Embedded Signup (ESB) endpoints.

Every call is authenticated with the session's bearer token. Response shapes
differ between backend versions (url vs esbUrl, esbStatus.status vs status,
wabaInfo.* vs top-level ids, data.* in stored-callback replies); they are
normalized here so callers only ever see the canonical schemas.
"""
import logging
from typing import Any, Optional

import httpx

from esb_onboarding.auth.context import AuthContext
from esb_onboarding.config import Settings
from esb_onboarding.schemas.esb import ActivationResult, CallbackResult, EsbStatus, StartResult

logger = logging.getLogger(__name__)

ESB_PREFIX = "/onboarding/esb"


class BackendError(Exception):
    """Non-2xx response from the backend."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class Unauthorized(BackendError):
    pass


class BackendUnavailable(BackendError):
    """The request never produced a response (DNS, connect, timeout)."""


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value not in (None, ""):
            return str(value)
    return None


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def normalize_start(payload: dict) -> StartResult:
    url = _first(payload.get("url"), payload.get("esbUrl"))
    if not url:
        raise BackendError("Failed to start signup flow. No redirect URL provided by server.")
    return StartResult(url=url, state=_first(payload.get("state")))


def normalize_status(payload: dict) -> EsbStatus:
    esb = payload.get("esbStatus")
    if isinstance(esb, dict):
        status = esb.get("status")
        failure_reason = esb.get("failureReason")
    else:
        status = esb if isinstance(esb, str) else payload.get("status")
        failure_reason = payload.get("failureReason")

    waba = _dict(payload.get("wabaInfo"))
    return EsbStatus(
        status=_first(status),
        failure_reason=_first(failure_reason),
        waba_id=_first(waba.get("wabaId"), payload.get("wabaId")),
        business_account_id=_first(waba.get("businessAccountId"), payload.get("businessAccountId")),
        phone_number_id=_first(waba.get("phoneNumberId"), payload.get("phoneNumberId")),
        phone_number=_first(waba.get("phoneNumber"), payload.get("phoneNumber")),
        plan_limits=_dict(payload.get("planLimits")),
        raw=payload,
    )


def normalize_callback(payload: dict) -> CallbackResult:
    data = _dict(payload.get("data"))
    return CallbackResult(
        success=bool(payload.get("success", True)),
        status=_first(data.get("status"), payload.get("status")),
        message=_first(payload.get("message")),
        waba_id=_first(data.get("wabaId"), payload.get("wabaId")),
        phone_number_id=_first(data.get("phoneNumberId"), payload.get("phoneNumberId")),
        raw=payload,
    )


def normalize_activation(payload: dict) -> ActivationResult:
    data = _dict(payload.get("data"))
    phones = payload.get("phoneNumbers") or data.get("phoneNumbers") or []
    if not isinstance(phones, list):
        phones = []
    first_phone = phones[0] if phones and isinstance(phones[0], dict) else {}
    return ActivationResult(
        waba_id=_first(data.get("wabaId"), payload.get("wabaId")),
        phone_number_id=_first(
            first_phone.get("id"), data.get("phoneNumberId"), payload.get("phoneNumberId")
        ),
        display_phone_number=_first(first_phone.get("display_phone_number")),
        verified_name=_first(first_phone.get("verified_name")),
        plan_limits=_dict(payload.get("planLimits")) or _dict(data.get("planLimits")),
        raw=payload,
    )


class EsbBackendClient:
    def __init__(
        self,
        settings: Settings,
        auth: AuthContext,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._auth = auth
        self._transport = transport

    @property
    def auth(self) -> AuthContext:
        return self._auth

    async def _request(
        self, method: str, path: str, fallback: str, json: Optional[dict] = None
    ) -> dict:
        url = f"{self._settings.api_base_url}{ESB_PREFIX}{path}"
        with self._auth.use() as token:
            try:
                async with httpx.AsyncClient(
                    timeout=self._settings.api_timeout_seconds, transport=self._transport
                ) as client:
                    resp = await client.request(
                        method, url, headers=self._auth.headers(token), json=json
                    )
            except httpx.HTTPError as e:
                logger.error("ESB %s %s failed: %s", method, path, e)
                raise BackendUnavailable(f"Network error: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {"raw_text": resp.text}
        if not isinstance(body, dict):
            body = {"data": body}

        if resp.status_code == 401:
            raise Unauthorized("Unauthorized", status_code=401)
        if not 200 <= resp.status_code < 300:
            message = body.get("message") or body.get("error") or fallback
            logger.warning("ESB %s %s -> %s: %s", method, path, resp.status_code, message)
            raise BackendError(str(message), code=body.get("code"), status_code=resp.status_code)
        return body

    async def start(self) -> StartResult:
        body = await self._request("POST", "/start", "Failed to start ESB flow")
        return normalize_start(body)

    async def status(self) -> EsbStatus:
        body = await self._request("GET", "/status", "Failed to fetch ESB status")
        return normalize_status(body)

    async def register_phone(self, phone: str) -> dict:
        return await self._request(
            "POST", "/register-phone", "Failed to register phone", json={"phoneNumber": phone}
        )

    async def verify_otp(self, otp: str) -> dict:
        return await self._request(
            "POST", "/verify-otp", "Failed to verify OTP", json={"otpCode": otp}
        )

    async def create_system_user(self) -> dict:
        return await self._request("POST", "/create-system-user", "Failed to create system user")

    async def activate(self) -> ActivationResult:
        body = await self._request("POST", "/activate-waba", "Failed to activate WABA", json={})
        return normalize_activation(body)

    async def process_callback(self, code: str, state: str) -> CallbackResult:
        body = await self._request(
            "POST",
            "/process-callback",
            "Failed to process Meta callback",
            json={"code": code, "state": state},
        )
        return normalize_callback(body)

    async def process_stored_callback(self) -> CallbackResult:
        body = await self._request(
            "POST", "/process-stored-callback", "Failed to process stored callback"
        )
        return normalize_callback(body)
