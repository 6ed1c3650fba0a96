"""Auto-Shutdown Sweep - stops instances past their session or idle budget.

The safety net against runaway cost: usage intervals are closed here even
if nobody ever calls stop.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, get_settings
from licensehub.app.metrics.collector import SWEEP_ITEMS_TOTAL
from licensehub.control.sweeps.base import SweepBase
from licensehub.core.clock import Clock, unix_now
from licensehub.core.domain import TASK_BOUND_STATUSES, InstanceStatus, LicenseType, SessionStatus
from licensehub.core.logging_schema import Component, LogEvent
from licensehub.core.models import Instance
from licensehub.core.schemas import ShutdownReport, ShutdownStats
from licensehub.services import state_store
from licensehub.services.instance_service import InstanceLifecycleManager
from licensehub.services.license_scheduler import LicenseScheduler

logger = logging.getLogger(__name__)


class AutoShutdownSweep(SweepBase):
    SWEEP_NAME = "auto_shutdown"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: InstanceLifecycleManager,
        scheduler: LicenseScheduler,
        clock: Clock = unix_now,
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        settings = settings or get_settings()
        self._sessions = session_factory
        self._lifecycle = lifecycle
        self._scheduler = scheduler
        self._clock = clock
        self._policy = settings.policy
        self.INTERVAL = settings.sweep.shutdown_interval

    async def expiry_for(self, db: AsyncSession, instance: Instance) -> int:
        """Instant after which a running instance should be stopped."""
        if instance.linked_session_id:
            session = await state_store.get_scheduled_session(db, instance.linked_session_id)
            if session is not None:
                return session.end_time + self._policy.session_grace_seconds
        if instance.auto_shutdown_at is not None:
            return instance.auto_shutdown_at
        budget = (
            self._policy.on_demand_idle_seconds
            if instance.license_type == LicenseType.BYOL
            else self._policy.pooled_default_seconds
        )
        return (instance.started_at or instance.updated_at) + budget

    def _due(self, instance: Instance, expiry: int, now: int) -> bool:
        # A stopping row is already on its way down; finish it so usage closes
        return instance.status == InstanceStatus.STOPPING or now >= expiry

    async def tick(self) -> ShutdownReport:
        report = ShutdownReport()
        now = self._clock()

        async with self._sessions() as db:
            bound = [
                i
                for i in await state_store.list_instances(db, set(TASK_BOUND_STATUSES))
                if i.task_ref is not None
            ]
            expired = [(i, await self.expiry_for(db, i)) for i in bound]
        report.checked = len(bound)

        for instance, expiry in expired:
            if not self._due(instance, expiry, now):
                continue
            try:
                result = await self._lifecycle.stop(instance.user_id)
            except Exception as exc:
                SWEEP_ITEMS_TOTAL.labels(sweep=self.SWEEP_NAME, result="failed").inc()
                report.errors.append(f"{instance.user_id}: {exc}")
                logger.error(
                    "Auto-shutdown failed",
                    extra={
                        "event": LogEvent.UPSTREAM_ERROR,
                        "component": Component.SHUTDOWN,
                        "user_id": instance.user_id,
                        "error": str(exc),
                    },
                )
                continue

            if not result.already_stopped:
                SWEEP_ITEMS_TOTAL.labels(sweep=self.SWEEP_NAME, result="stopped").inc()
                report.stopped.append(instance.user_id)
                logger.info(
                    "Instance auto-shutdown",
                    extra={
                        "event": LogEvent.INSTANCE_STOPPED,
                        "component": Component.SHUTDOWN,
                        "user_id": instance.user_id,
                        "expired_at": expiry,
                        "linked_session_id": instance.linked_session_id,
                    },
                )
            if instance.linked_session_id:
                completed, _ = await self._scheduler.close_session(instance.linked_session_id)
                if completed:
                    report.sessions_completed.append(instance.linked_session_id)

        report.sessions_completed.extend(await self._complete_orphaned_sessions(now))
        return report

    async def _complete_orphaned_sessions(self, now: int) -> list[str]:
        """Complete active sessions past their end with no instance running for them."""
        completed = []
        async with self._sessions() as db:
            lapsed = await state_store.list_lapsed_sessions(db, SessionStatus.ACTIVE, now)
            orphaned = []
            for session in lapsed:
                instance = await state_store.get_instance(db, session.instance_id or session.user_id)
                if instance is None or instance.linked_session_id != session.session_id:
                    orphaned.append(session.session_id)

        for session_id in orphaned:
            done, _ = await self._scheduler.close_session(session_id)
            if done:
                SWEEP_ITEMS_TOTAL.labels(sweep=self.SWEEP_NAME, result="session_completed").inc()
                completed.append(session_id)
        return completed

    async def shutdown_stats(self) -> ShutdownStats:
        """Running instances and how soon each is due to stop."""
        now = self._clock()
        async with self._sessions() as db:
            running = await state_store.list_instances(db, {InstanceStatus.RUNNING})
            expiries = [await self.expiry_for(db, i) for i in running]

        upcoming = [e - now for e in expiries if e > now]
        return ShutdownStats(
            total_running=len(running),
            scheduled_for_shutdown=sum(1 for i in running if i.auto_shutdown_at is not None),
            overdue=sum(1 for e in expiries if e <= now),
            next_shutdown_in=min(upcoming) if upcoming else None,
        )
