"""Time-bounded status polling while the user is away in Meta's hosted flow."""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PollingGuard:
    """
    Re-check status every `interval` seconds until a terminal step or timeout.

    `started_at` is stamped by start(), not at construction, so the timeout is
    measured from the moment polling actually begins. Each tick checks the
    terminal predicate first, then the elapsed time, and only then issues the
    status request. Tick failures are logged and polling continues.
    """

    def __init__(
        self,
        interval: float,
        max_duration: float,
        on_tick: Callable[[], Awaitable[None]],
        is_terminal: Callable[[], bool],
        on_timeout: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.interval = interval
        self.max_duration = max_duration
        self._on_tick = on_tick
        self._is_terminal = is_terminal
        self._on_timeout = on_timeout
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.started_at: Optional[float] = None
        self.ticks = 0
        self.timed_out = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self._clock() - self.started_at

    def start(self) -> None:
        """Begin (or restart) polling with a fresh start time."""
        self.cancel()
        self.started_at = self._clock()
        self.ticks = 0
        self.timed_out = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        """Wait for the current polling run to finish (tests, shutdown)."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)

            if self._is_terminal():
                logger.debug("Polling stopped: terminal step reached")
                return

            if self.elapsed() > self.max_duration:
                logger.warning("Polling timeout exceeded after %.0fs", self.max_duration)
                self.timed_out = True
                self._on_timeout()
                return

            self.ticks += 1
            try:
                await self._on_tick()
            except Exception as e:
                logger.warning("Status poll failed: %s", e)
