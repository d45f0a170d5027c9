import pytest
from unittest.mock import AsyncMock, Mock

from esb_onboarding.auth.context import AuthContext
from esb_onboarding.config import Settings
from esb_onboarding.integrations.backend import EsbBackendClient
from esb_onboarding.schemas.esb import (
    ActivationResult,
    CallbackResult,
    EsbStatus,
    StartResult,
)


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        api_url="https://api.test",
        esb_launch_mode="redirect",
        esb_poll_interval_seconds=3,
        esb_poll_max_duration_seconds=300,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_backend():
    """Backend client double with canned successful responses"""
    backend = Mock(spec=EsbBackendClient)
    backend.auth = AuthContext("test-token")
    backend.start = AsyncMock(return_value=StartResult(url="https://meta.example/oauth", state="xyz"))
    backend.status = AsyncMock(return_value=EsbStatus(status=None))
    backend.register_phone = AsyncMock(return_value={"success": True})
    backend.verify_otp = AsyncMock(return_value={"success": True})
    backend.create_system_user = AsyncMock(return_value={"success": True})
    backend.activate = AsyncMock(
        return_value=ActivationResult(
            waba_id="waba-1",
            phone_number_id="pn-1",
            display_phone_number="+1 415 555 0123",
            verified_name="Acme",
        )
    )
    backend.process_callback = AsyncMock(return_value=CallbackResult(success=True, status="token_exchanged"))
    backend.process_stored_callback = AsyncMock(return_value=CallbackResult(success=True, status="token_exchanged"))
    return backend
