"""
Bearer token holder shared by every backend call of one onboarding session.

The token may only change while no request is using it: replacing it raises
AuthContextBusy, and invalidation (logout, 401) is deferred until the last
in-flight request has finished.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class AuthContextBusy(RuntimeError):
    pass


class AuthContext:
    def __init__(self, token: Optional[str] = None):
        self._token = token or None
        self._in_flight = 0
        self._invalidate_pending = False

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def headers(self, token: Optional[str] = None) -> dict:
        headers = {"Content-Type": "application/json"}
        token = token if token is not None else self._token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @contextmanager
    def use(self) -> Iterator[Optional[str]]:
        """Hold the current token for the duration of one request."""
        self._in_flight += 1
        try:
            yield self._token
        finally:
            self._in_flight -= 1
            if self._in_flight == 0 and self._invalidate_pending:
                self._clear()

    def set_token(self, token: Optional[str]) -> None:
        if self._in_flight:
            raise AuthContextBusy("Cannot replace the bearer token while requests are in flight")
        self._invalidate_pending = False
        self._token = token or None

    def invalidate(self) -> None:
        """Drop the token now, or as soon as the in-flight requests finish."""
        if self._in_flight:
            logger.info("Deferring token invalidation until %d request(s) finish", self._in_flight)
            self._invalidate_pending = True
            return
        self._clear()

    def _clear(self) -> None:
        self._token = None
        self._invalidate_pending = False
