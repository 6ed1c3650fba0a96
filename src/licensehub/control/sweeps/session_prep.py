"""Session Preparation Sweep - promotes due scheduled sessions to active.

Each tick:
1. Expires scheduled sessions whose window ended without being started
2. Activates sessions starting within the look-ahead window

Activation is claimed per session with a scheduled→active conditional
write, so a session is started at most once even if ticks overlap.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, get_settings
from licensehub.app.metrics.collector import SESSION_PREP_FAILURES_TOTAL, SWEEP_ITEMS_TOTAL
from licensehub.control.sweeps.base import SweepBase
from licensehub.core.clock import Clock, unix_now
from licensehub.core.domain import SessionStatus
from licensehub.core.logging_schema import Component, LogEvent
from licensehub.core.schemas import PrepReport
from licensehub.services import state_store
from licensehub.services.license_scheduler import LicenseScheduler

logger = logging.getLogger(__name__)


class SessionPrepSweep(SweepBase):
    SWEEP_NAME = "session_prep"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: LicenseScheduler,
        clock: Clock = unix_now,
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        settings = settings or get_settings()
        self._sessions = session_factory
        self._scheduler = scheduler
        self._clock = clock
        self._lead = settings.policy.prep_lead_seconds
        self.INTERVAL = settings.sweep.prepare_interval

    async def tick(self) -> PrepReport:
        report = PrepReport()
        now = self._clock()

        report.expired = await self._expire_missed(now)

        async with self._sessions() as db:
            due = await state_store.list_due_sessions(db, until=now + self._lead, now=now)
        report.due = len(due)

        for session in due:
            try:
                result = await self._scheduler.activate_session(session.session_id)
            except Exception as exc:
                # Failure is recorded on the session; keep going with the rest
                SESSION_PREP_FAILURES_TOTAL.inc()
                SWEEP_ITEMS_TOTAL.labels(sweep=self.SWEEP_NAME, result="failed").inc()
                report.failed.append(session.session_id)
                report.errors.append(f"{session.session_id}: {exc}")
                continue

            if result.activated:
                SWEEP_ITEMS_TOTAL.labels(sweep=self.SWEEP_NAME, result="activated").inc()
                report.activated.append(session.session_id)
            else:
                SWEEP_ITEMS_TOTAL.labels(sweep=self.SWEEP_NAME, result="skipped").inc()
                report.skipped.append(session.session_id)

        if report.due or report.expired:
            logger.info(
                "Session preparation pass",
                extra={
                    "event": LogEvent.SWEEP_TICK,
                    "component": Component.PREP,
                    "due": report.due,
                    "activated": len(report.activated),
                    "skipped": len(report.skipped),
                    "failed": len(report.failed),
                    "expired": len(report.expired),
                },
            )
        return report

    async def _expire_missed(self, now: int) -> list[str]:
        """Cancel scheduled sessions whose whole window passed unstarted."""
        expired = []
        async with self._sessions() as db:
            lapsed = await state_store.list_lapsed_sessions(db, SessionStatus.SCHEDULED, now)
            for session in lapsed:
                cancelled, _ = await state_store.cancel_session_and_reservations(
                    db, session.session_id, now, expected={SessionStatus.SCHEDULED}
                )
                if cancelled:
                    expired.append(session.session_id)
            await db.commit()

        for session_id in expired:
            SWEEP_ITEMS_TOTAL.labels(sweep=self.SWEEP_NAME, result="expired").inc()
            logger.warning(
                "Scheduled session expired before it could start",
                extra={"event": LogEvent.SESSION_EXPIRED, "session_id": session_id},
            )
        return expired
