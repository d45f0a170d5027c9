"""Tests for time-bounded status polling (esb_onboarding/services/polling.py)"""
import asyncio
from unittest.mock import AsyncMock, Mock

from esb_onboarding.services.polling import PollingGuard


def run(coro):
    """Helper to run an async coroutine synchronously in tests."""
    return asyncio.run(coro)


def _guard(clock, on_tick=None, is_terminal=None, on_timeout=None):
    return PollingGuard(
        interval=3,
        max_duration=300,
        on_tick=on_tick or AsyncMock(),
        is_terminal=is_terminal or (lambda: False),
        on_timeout=on_timeout or Mock(),
        clock=clock,
        sleep=clock.sleep,
    )


class TestPollingGuard:
    def test_times_out_after_max_duration(self, clock):
        """
        GIVEN a 3s interval and a 300s limit with no terminal step
        WHEN polling runs to completion
        THEN exactly 100 status requests are made and the timeout fires once
        """
        on_tick = AsyncMock()
        on_timeout = Mock()
        guard = _guard(clock, on_tick=on_tick, on_timeout=on_timeout)

        async def scenario():
            guard.start()
            await guard.wait()

        run(scenario())

        assert guard.ticks == 100
        assert on_tick.await_count == 100
        assert guard.timed_out
        on_timeout.assert_called_once()
        assert not guard.running

    def test_stops_on_terminal_step_without_timeout(self, clock):
        on_tick = AsyncMock()
        on_timeout = Mock()
        guard = _guard(clock, on_tick=on_tick, is_terminal=lambda: on_tick.await_count >= 2, on_timeout=on_timeout)

        async def scenario():
            guard.start()
            await guard.wait()

        run(scenario())

        assert guard.ticks == 2
        assert not guard.timed_out
        on_timeout.assert_not_called()

    def test_terminal_check_runs_before_first_request(self, clock):
        on_tick = AsyncMock()
        guard = _guard(clock, on_tick=on_tick, is_terminal=lambda: True)

        async def scenario():
            guard.start()
            await guard.wait()

        run(scenario())
        on_tick.assert_not_called()

    def test_start_time_is_stamped_when_polling_starts(self, clock):
        guard = _guard(clock)
        assert guard.started_at is None
        assert guard.elapsed() == 0.0

        clock.now = 5000.0

        async def scenario():
            guard.start()
            started = guard.started_at
            guard.cancel()
            return started

        assert run(scenario()) == 5000.0

    def test_tick_failures_do_not_stop_polling(self, clock):
        on_tick = AsyncMock(side_effect=RuntimeError("backend down"))
        guard = _guard(clock, on_tick=on_tick)

        async def scenario():
            guard.start()
            await guard.wait()

        run(scenario())

        assert guard.ticks == 100
        assert guard.timed_out

    def test_cancel_before_first_tick(self, clock):
        on_tick = AsyncMock()
        guard = _guard(clock, on_tick=on_tick)

        async def scenario():
            guard.start()
            assert guard.running
            guard.cancel()
            await guard.wait()

        run(scenario())

        assert not guard.running
        on_tick.assert_not_called()

    def test_restart_resets_counters(self, clock):
        guard = _guard(clock)

        async def scenario():
            guard.start()
            await guard.wait()
            assert guard.timed_out
            guard.start()
            restarted_at = guard.started_at
            guard.cancel()
            return restarted_at

        restarted_at = run(scenario())

        assert restarted_at == clock.now
        assert guard.ticks == 0
        assert not guard.timed_out
