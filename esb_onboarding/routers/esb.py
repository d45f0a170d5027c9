"""Embedded Signup endpoints: one onboarding session per authenticated caller."""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse

from esb_onboarding.auth.dependencies import get_bearer_token
from esb_onboarding.schemas.esb import OtpIn, PhoneIn, SessionOut
from esb_onboarding.services.callback import CALLBACK_PARAMS, strip_callback_params
from esb_onboarding.services.orchestrator import OnboardingOrchestrator
from esb_onboarding.services.registry import SessionRegistry, get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/esb", tags=["esb"])


def _require_session(registry: SessionRegistry, token: str) -> OnboardingOrchestrator:
    orchestrator = registry.get(token)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="No onboarding session. Mount one first.")
    return orchestrator


@router.post("/session", response_model=SessionOut)
async def mount_session(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    """Start a fresh session and load the current status from the backend."""
    orchestrator = await registry.mount(token)
    return orchestrator.view()


@router.get("/session", response_model=SessionOut)
async def get_session(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    return _require_session(registry, token).view()


@router.delete("/session", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    """Navigation away: stop polling and forget the session."""
    registry.close(token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/callback")
async def esb_callback(
    request: Request,
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Landing route for Meta's redirect.

    With callback parameters: mount a fresh session that consumes them, then
    answer 303 to the same URL without them so a refresh cannot resubmit the
    code. Without parameters: show the current session.
    """
    if any(name in request.query_params for name in CALLBACK_PARAMS):
        logger.info("ESB callback landed with params: %s", sorted(request.query_params.keys()))
        await registry.mount(token, dict(request.query_params))
        return RedirectResponse(
            url=strip_callback_params(str(request.url)),
            status_code=status.HTTP_303_SEE_OTHER,
        )

    orchestrator = registry.get(token) or await registry.mount(token)
    return orchestrator.view()


@router.post("/session/start", response_model=SessionOut)
async def start_signup(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.start()
    return orchestrator.view()


@router.post("/session/verify-business", response_model=SessionOut)
async def verify_business(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.verify_business()
    return orchestrator.view()


@router.post("/session/register-phone", response_model=SessionOut)
async def register_phone(
    body: PhoneIn,
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.register_phone(body.phone)
    return orchestrator.view()


@router.post("/session/verify-otp", response_model=SessionOut)
async def verify_otp(
    body: OtpIn,
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.verify_otp(body.otp)
    return orchestrator.view()


@router.post("/session/resend-otp", response_model=SessionOut)
async def resend_otp(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.resend_otp()
    return orchestrator.view()


@router.post("/session/system-user", response_model=SessionOut)
async def create_system_user(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.create_system_user()
    return orchestrator.view()


@router.post("/session/activate", response_model=SessionOut)
async def activate_waba(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.activate()
    return orchestrator.view()


@router.post("/session/check-status", response_model=SessionOut)
async def check_status(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    await orchestrator.check_status()
    return orchestrator.view()


@router.post("/session/restart", response_model=SessionOut)
async def restart_signup(
    token: str = Depends(get_bearer_token),
    registry: SessionRegistry = Depends(get_registry),
):
    orchestrator = _require_session(registry, token)
    orchestrator.restart()
    return orchestrator.view()
