"""Unit tests for SweepBase."""

import asyncio

from licensehub.control.sweeps.base import SweepBase


class DummySweep(SweepBase):
    """Sweep that stops itself after a few ticks."""

    SWEEP_NAME = "dummy"
    INTERVAL = 0.01

    def __init__(self, stop_after: int = 3, error: BaseException | None = None) -> None:
        super().__init__()
        self.tick_count = 0
        self._stop_after = stop_after
        self._error = error

    async def tick(self) -> None:
        self.tick_count += 1
        if self.tick_count >= self._stop_after:
            self.stop()
        if self._error is not None:
            raise self._error


class TestExecuteTick:
    """_execute_tick() error handling."""

    async def test_success_continues(self) -> None:
        sweep = DummySweep()

        assert await sweep._execute_tick() is True
        assert sweep._last_tick > 0

    async def test_error_is_logged_and_loop_continues(self) -> None:
        """A failing tick must not kill the sweep."""
        sweep = DummySweep(error=RuntimeError("boom"))

        assert await sweep._execute_tick() is True

    async def test_cancellation_stops_loop(self) -> None:
        sweep = DummySweep(error=asyncio.CancelledError())

        assert await sweep._execute_tick() is False


class TestRun:
    """run() loop."""

    async def test_runs_until_stopped(self) -> None:
        sweep = DummySweep(stop_after=3)

        await asyncio.wait_for(sweep.run(), timeout=5)

        assert sweep.tick_count == 3

    async def test_errors_do_not_stop_run(self) -> None:
        sweep = DummySweep(stop_after=2, error=ValueError("bad row"))

        await asyncio.wait_for(sweep.run(), timeout=5)

        assert sweep.tick_count == 2
