"""Per-step outcomes for cascading and bulk operations.

Cascades (destroy, bulk admin actions) attempt every step and collect
failures instead of aborting on the first one:

    outcomes = StepLog()
    await outcomes.attempt("delete_bucket", lambda: storage.delete_bucket(name))
    await outcomes.attempt("delete_secret", lambda: secrets.delete(ref))
    if outcomes.errors: ...
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from licensehub.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """Result of one cascade step."""

    step: str
    ok: bool
    error: str | None = None
    value: Any = None


@dataclass
class StepLog:
    """Ordered outcomes of a cascade."""

    outcomes: list[StepOutcome] = field(default_factory=list)

    async def attempt(
        self,
        step: str,
        coro_factory: Callable[[], Awaitable[Any]],
        **log_extra: Any,
    ) -> StepOutcome:
        """Run one step, recording (not raising) its failure."""
        try:
            value = await coro_factory()
        except Exception as exc:
            outcome = StepOutcome(step=step, ok=False, error=f"{step}: {exc}")
            logger.warning(
                "Cascade step failed: %s",
                step,
                extra={
                    "event": LogEvent.CLEANUP_STEP_FAILED,
                    "step": step,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    **log_extra,
                },
            )
        else:
            outcome = StepOutcome(step=step, ok=True, value=value)
        self.outcomes.append(outcome)
        return outcome

    def record_failure(self, step: str, error: str) -> None:
        self.outcomes.append(StepOutcome(step=step, ok=False, error=f"{step}: {error}"))

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def errors(self) -> list[str]:
        return [o.error for o in self.outcomes if not o.ok and o.error]
