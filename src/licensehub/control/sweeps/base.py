"""Sweep infrastructure - base class for periodic sweeps.

Sweeps run in every process without leader election. Each item a sweep
touches is claimed with a conditional write, so overlapping ticks (two
processes, or a tick that overran its interval) skip instead of repeating
work.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

from licensehub.app.config import get_settings
from licensehub.app.logging import clear_trace_context, set_trace_id
from licensehub.app.metrics.collector import SWEEP_DURATION
from licensehub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_settings = get_settings()


class SweepBase(ABC):
    """Base class for timer-driven sweeps."""

    INTERVAL: float = 60.0
    SWEEP_NAME: str = "sweep"

    def __init__(self) -> None:
        self._running = False
        self._last_tick = 0.0

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def tick(self) -> Any:
        """Execute one pass. Must be safe to run concurrently with itself."""
        pass

    async def run(self) -> None:
        """Main sweep loop."""
        self._running = True
        logger.info(
            "Starting sweep",
            extra={"event": LogEvent.APP_STARTED, "sweep": self.SWEEP_NAME, "interval": self.INTERVAL},
        )
        try:
            while self._running:
                if not await self._execute_tick():
                    break
                await asyncio.sleep(self.INTERVAL)
        finally:
            logger.info(
                "Sweep stopped",
                extra={"event": LogEvent.APP_STOPPED, "sweep": self.SWEEP_NAME},
            )

    def stop(self) -> None:
        self._running = False

    async def _execute_tick(self) -> bool:
        """Execute tick. Returns False if cancelled."""
        set_trace_id()
        started = time.monotonic()
        try:
            result = await self.tick()
        except asyncio.CancelledError:
            return False
        except Exception as e:
            logger.exception(
                "Error in sweep tick: %s",
                e,
                extra={"event": LogEvent.SWEEP_TICK, "sweep": self.SWEEP_NAME},
            )
            return True
        else:
            elapsed = time.monotonic() - started
            extra = {
                "event": LogEvent.SWEEP_TICK,
                "sweep": self.SWEEP_NAME,
                "duration_ms": round(elapsed * 1000, 1),
            }
            if result is not None and hasattr(result, "model_dump"):
                extra["result"] = result.model_dump(by_alias=True)
            if elapsed * 1000 > _settings.logging.slow_threshold_ms:
                extra["event"] = LogEvent.SWEEP_SLOW
                logger.warning("Slow sweep tick", extra=extra)
            else:
                logger.debug("Sweep tick complete", extra=extra)
            return True
        finally:
            self._last_tick = time.time()
            SWEEP_DURATION.labels(sweep=self.SWEEP_NAME).observe(time.monotonic() - started)
            clear_trace_context()
