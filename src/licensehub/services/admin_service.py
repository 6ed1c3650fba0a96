"""Admin operations: overview, forced shutdowns and bulk maintenance.

Bulk operations are not transactional. Each item is attempted on its own
and failures are collected into the BulkResult.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, get_settings
from licensehub.control.sweeps.auto_shutdown import AutoShutdownSweep
from licensehub.core.clock import Clock, unix_now
from licensehub.core.domain import (
    OPEN_SESSION_STATUSES,
    InstanceStatus,
    LicenseType,
    SessionStatus,
)
from licensehub.core.errors import ConflictError
from licensehub.core.logging_schema import Component, LogEvent
from licensehub.core.outcome import StepLog
from licensehub.core.schemas import (
    BulkResult,
    CancelResult,
    InstanceView,
    Overview,
    OverviewSummary,
    PoolView,
    SessionView,
)
from licensehub.services import state_store, usage_ledger
from licensehub.services.instance_service import InstanceLifecycleManager
from licensehub.services.license_scheduler import LicenseScheduler

logger = logging.getLogger(__name__)

DEFAULT_REASON = "No reason provided"


class AdminService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: InstanceLifecycleManager,
        scheduler: LicenseScheduler,
        shutdown: AutoShutdownSweep,
        clock: Clock = unix_now,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._sessions = session_factory
        self._lifecycle = lifecycle
        self._scheduler = scheduler
        self._shutdown = shutdown
        self._clock = clock
        self._rate = settings.usage.cost_per_hour

    def _audit(self, action: str, admin_id: str, reason: str, **extra) -> None:
        logger.warning(
            "Admin action: %s",
            action,
            extra={
                "event": LogEvent.ADMIN_ACTION,
                "component": Component.ADMIN,
                "action": action,
                "admin_id": admin_id,
                "reason": reason,
                **extra,
            },
        )

    async def overview(self) -> Overview:
        now = self._clock()
        async with self._sessions() as db:
            instances = await state_store.list_instances(db)
            sessions = await state_store.list_sessions(db, statuses=set(OPEN_SESSION_STATUSES))
            pools = await state_store.list_pools(db)
            hours = await usage_ledger.get_current_month_usage(db, now)
        stats = await self._shutdown.shutdown_stats()

        running = [i for i in instances if i.status == InstanceStatus.RUNNING]
        summary = OverviewSummary(
            total_instances=len(instances),
            running_instances=len(running),
            byol_instances=sum(1 for i in instances if i.license_type == LicenseType.BYOL),
            pooled_instances=sum(1 for i in instances if i.license_type == LicenseType.POOLED),
            shared_licenses=sum(1 for p in pools if p.is_active),
            active_sessions=sum(1 for s in sessions if s.status == SessionStatus.ACTIVE),
            upcoming_sessions=sum(
                1 for s in sessions if s.status == SessionStatus.SCHEDULED and s.start_time > now
            ),
            instances_with_timers=sum(1 for i in running if i.auto_shutdown_at is not None),
            total_hours_this_month=round(hours, 2),
            estimated_monthly_cost=round(hours * self._rate, 2),
        )
        return Overview(
            summary=summary,
            auto_shutdown=stats,
            instances=[InstanceView.of(i, self._lifecycle.url_for(i)) for i in instances],
            sessions=[SessionView.of(s) for s in sessions],
            license_pools=[PoolView.of(p) for p in pools],
        )

    async def force_shutdown(
        self,
        target_user_id: str,
        admin_id: str,
        reason: str | None = None,
    ) -> BulkResult:
        """Stop a running instance and complete the session it was serving.

        Raises:
            NotFoundError: If the target has no instance
            ConflictError: If the instance is not running
        """
        reason = reason or DEFAULT_REASON
        async with self._sessions() as db:
            instance = await state_store.require_instance(db, target_user_id)
        if instance.task_ref is None:
            raise ConflictError("Instance is not running")

        self._audit("force-shutdown", admin_id, reason, user_id=target_user_id)
        stopped = await self._lifecycle.stop(target_user_id)
        completed = 0
        if instance.linked_session_id:
            done, _ = await self._scheduler.close_session(instance.linked_session_id)
            completed = int(done)
        return BulkResult(
            action="force-shutdown",
            reason=reason,
            processed=1,
            succeeded=0 if stopped.already_stopped else 1,
            details={"sessionsCompleted": completed},
        )

    async def cancel_session(
        self,
        session_id: str,
        admin_id: str,
        reason: str | None = None,
    ) -> CancelResult:
        reason = reason or DEFAULT_REASON
        self._audit("cancel-session", admin_id, reason, session_id=session_id)
        return await self._scheduler.cancel_session(session_id, requested_by=admin_id, is_admin=True)

    async def _cancel_open_sessions(self, admin_id: str, steps: StepLog) -> int:
        async with self._sessions() as db:
            sessions = await state_store.list_sessions(db, statuses=set(OPEN_SESSION_STATUSES))
        for session in sessions:
            await steps.attempt(
                f"session:{session.session_id}",
                lambda sid=session.session_id: self._scheduler.cancel_session(
                    sid, requested_by=admin_id, is_admin=True
                ),
            )
        return len(sessions)

    async def cancel_all_sessions(self, admin_id: str, reason: str | None = None) -> BulkResult:
        reason = reason or DEFAULT_REASON
        self._audit("cancel-all-sessions", admin_id, reason)
        steps = StepLog()
        total = await self._cancel_open_sessions(admin_id, steps)
        return BulkResult(
            action="cancel-all-sessions",
            reason=reason,
            processed=total,
            succeeded=steps.succeeded,
            errors=steps.errors,
            details={"sessionsCancelled": steps.succeeded},
        )

    async def system_maintenance(self, admin_id: str, reason: str | None = None) -> BulkResult:
        """Cancel every open session, then stop every running instance."""
        reason = reason or DEFAULT_REASON
        self._audit("system-maintenance", admin_id, reason)

        session_steps = StepLog()
        sessions_total = await self._cancel_open_sessions(admin_id, session_steps)

        async with self._sessions() as db:
            instances = [i for i in await state_store.list_instances(db) if i.task_ref is not None]
        instance_steps = StepLog()
        for instance in instances:
            await instance_steps.attempt(
                f"instance:{instance.user_id}",
                lambda uid=instance.user_id: self._lifecycle.stop(uid),
            )

        return BulkResult(
            action="system-maintenance",
            reason=reason,
            processed=sessions_total + len(instances),
            succeeded=session_steps.succeeded + instance_steps.succeeded,
            errors=session_steps.errors + instance_steps.errors,
            details={
                "sessionsCancelled": session_steps.succeeded,
                "totalSessions": sessions_total,
                "instancesStopped": instance_steps.succeeded,
                "totalInstances": len(instances),
            },
        )

    async def maintenance_reset(self, admin_id: str, reason: str | None = None) -> BulkResult:
        """Cancel every open session and reservation, then re-activate sharing pools.

        Only pools whose owner still has a BYOL instance with sharing enabled
        are re-activated.
        """
        reason = reason or DEFAULT_REASON
        self._audit("maintenance-reset", admin_id, reason)

        steps = StepLog()
        sessions_total = await self._cancel_open_sessions(admin_id, steps)
        sessions_cancelled = steps.succeeded

        async def _cancel_reservations() -> int:
            async with self._sessions() as db:
                count = await state_store.cancel_all_active_reservations(db, self._clock())
                await db.commit()
            return count

        outcome = await steps.attempt("reservations", _cancel_reservations)
        reservations_cancelled = outcome.value if outcome.ok else 0

        async with self._sessions() as db:
            pools = await state_store.list_pools(db)
        pools_reset = 0
        for pool in pools:
            outcome = await steps.attempt(
                f"pool:{pool.license_id}",
                lambda p=pool: self._reset_pool(p.license_id, p.owner_id),
            )
            if outcome.ok and outcome.value:
                pools_reset += 1

        return BulkResult(
            action="maintenance-reset",
            reason=reason,
            processed=sessions_total + 1 + len(pools),
            succeeded=steps.succeeded,
            errors=steps.errors,
            details={
                "sessionsCancelled": sessions_cancelled,
                "totalSessions": sessions_total,
                "reservationsCancelled": reservations_cancelled,
                "poolsReset": pools_reset,
                "totalPools": len(pools),
            },
        )

    async def _reset_pool(self, license_id: str, owner_id: str) -> bool:
        now = self._clock()
        async with self._sessions() as db:
            owner = await state_store.get_instance(db, owner_id)
            sharing = (
                owner is not None
                and owner.license_type == LicenseType.BYOL
                and owner.allow_license_sharing
            )
            await state_store.set_pool_active(db, license_id, sharing, now)
            await db.commit()
        return sharing
