"""In-process onboarding sessions, one per bearer token."""
import logging
import time
from typing import Callable, Dict, Mapping, Optional

from esb_onboarding.auth.context import AuthContext
from esb_onboarding.config import Settings, settings as default_settings
from esb_onboarding.integrations.backend import EsbBackendClient
from esb_onboarding.services.orchestrator import OnboardingOrchestrator

logger = logging.getLogger(__name__)

BackendFactory = Callable[[AuthContext], EsbBackendClient]


class SessionRegistry:
    """
    Sessions are evicted once idle for `esb_session_idle_ttl_seconds`, or as
    soon as their bearer token has been invalidated by a 401. Eviction is
    swept lazily on every lookup and mount.
    """

    def __init__(
        self,
        config: Settings = default_settings,
        backend_factory: Optional[BackendFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config
        self._backend_factory = backend_factory or (lambda auth: EsbBackendClient(config, auth))
        self._clock = clock
        self._sessions: Dict[str, OnboardingOrchestrator] = {}
        self._last_seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, token: str) -> Optional[OnboardingOrchestrator]:
        self.evict_stale()
        orchestrator = self._sessions.get(token)
        if orchestrator is not None:
            self._last_seen[token] = self._clock()
        return orchestrator

    async def mount(self, token: str, query: Optional[Mapping[str, str]] = None) -> OnboardingOrchestrator:
        """Fresh page mount: the previous session for this token is discarded."""
        self.evict_stale()
        self.close(token)
        backend = self._backend_factory(AuthContext(token))
        orchestrator = OnboardingOrchestrator(backend, config=self._config)
        self._sessions[token] = orchestrator
        self._last_seen[token] = self._clock()
        await orchestrator.mount(query)
        return orchestrator

    def close(self, token: str) -> bool:
        orchestrator = self._sessions.pop(token, None)
        self._last_seen.pop(token, None)
        if orchestrator is None:
            return False
        orchestrator.close()
        return True

    def evict_stale(self) -> int:
        now = self._clock()
        ttl = self._config.esb_session_idle_ttl_seconds
        stale = [
            token
            for token, orchestrator in self._sessions.items()
            if not orchestrator.authenticated
            or now - self._last_seen.get(token, now) > ttl
        ]
        for token in stale:
            self.close(token)
        if stale:
            logger.info("Evicted %d stale onboarding session(s)", len(stale))
        return len(stale)

    def close_all(self) -> None:
        for token in list(self._sessions):
            self.close(token)
        logger.info("Closed all onboarding sessions")


registry = SessionRegistry()


def get_registry() -> SessionRegistry:
    return registry
