"""Per-service circuit breakers for AWS calls.

Each AWS service ("ecs", "elbv2", "route53", ...) gets its own breaker, so
an ECS outage fails start/stop fast without blocking DNS or Secrets Manager
cleanup. Only failures that say something about the service's health count:
PERMANENT errors (missing resources, bad input) and RATE_LIMITED errors
(the service is up, we are just calling too often) are passed through.

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(cooldown elapsed)--> HALF_OPEN
    HALF_OPEN --(success_threshold successes)--> CLOSED
    HALF_OPEN --(any counted failure)--> OPEN
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from licensehub.app.metrics.collector import (
    CIRCUIT_BREAKER_CALLS_TOTAL,
    CIRCUIT_BREAKER_REJECTIONS_TOTAL,
    CIRCUIT_BREAKER_STATE,
)
from licensehub.core.logging_schema import ErrorClass, LogEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorClassifier = Callable[[Exception], ErrorClass | None]

# Failures of these classes leave the breaker untouched
_UNCOUNTED = frozenset({ErrorClass.PERMANENT, ErrorClass.RATE_LIMITED})


class CircuitState(Enum):
    CLOSED = 0
    HALF_OPEN = 1
    OPEN = 2


class CircuitOpenError(Exception):
    """The service's circuit is open; the call was not attempted."""

    def __init__(self, service: str, retry_after: float) -> None:
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"Circuit open for {service}, retry after {retry_after:.1f}s")


class CircuitBreaker:
    """Consecutive-failure breaker for one AWS service.

    Args:
        name: Service name (metric label and registry key)
        failure_threshold: Consecutive counted failures that open the circuit
        success_threshold: Trial successes in HALF_OPEN that close it
        cooldown: Seconds to stay OPEN before letting trial calls through
        error_classifier: Maps an exception to its ErrorClass; without one,
            every failure counts
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        cooldown: float = 60.0,
        error_classifier: ErrorClassifier | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.cooldown = cooldown
        self._classify = error_classifier

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._opened_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _transition(self, state: CircuitState) -> None:
        if state == self._state:
            return
        logger.warning(
            "Circuit %s %s -> %s",
            self.name,
            self._state.name,
            state.name,
            extra={"event": LogEvent.STATE_CHANGED, "circuit": self.name, "state": state.name},
        )
        self._state = state
        if state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif state == CircuitState.HALF_OPEN:
            self._trial_successes = 0
        else:
            self._failures = 0
        CIRCUIT_BREAKER_STATE.labels(circuit=self.name).set(state.value)

    async def _admit(self) -> None:
        async with self._lock:
            if self._state != CircuitState.OPEN:
                return
            remaining = self.cooldown - (time.monotonic() - self._opened_at)
            if remaining > 0:
                CIRCUIT_BREAKER_REJECTIONS_TOTAL.labels(circuit=self.name).inc()
                raise CircuitOpenError(self.name, remaining)
            self._transition(CircuitState.HALF_OPEN)

    def _counts(self, exc: Exception) -> bool:
        return self._classify is None or self._classify(exc) not in _UNCOUNTED

    async def call(self, coro_factory: Callable[[], Awaitable[T]]) -> T:
        """Run one call through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open and still cooling down
        """
        await self._admit()
        try:
            result = await coro_factory()
        except Exception as exc:
            CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit=self.name, result="failure").inc()
            if self._counts(exc):
                await self._record_failure()
            raise
        CIRCUIT_BREAKER_CALLS_TOTAL.labels(circuit=self.name, result="success").inc()
        await self._record_success()
        return result

    async def _record_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.HALF_OPEN:
                self._failures = 0
                return
            self._trial_successes += 1
            if self._trial_successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)

    async def _record_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                self._transition(CircuitState.OPEN)


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, error_classifier: ErrorClassifier | None = None) -> CircuitBreaker:
    """Breaker for ``name``, created on first use (the classifier binds then)."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = _breakers[name] = CircuitBreaker(name=name, error_classifier=error_classifier)
    return breaker


def reset_all_circuit_breakers() -> None:
    """Forget every breaker (tests)."""
    _breakers.clear()
