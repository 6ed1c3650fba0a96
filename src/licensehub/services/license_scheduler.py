"""License Scheduler.

Admission control for time-windowed license usage. A license backs at most
``max_concurrent_users`` holders at any instant; holders are active
reservations plus the owner's on-demand instance (which scheduled
reservations always outrank).

Usage:
    scheduler = LicenseScheduler(session_factory, lifecycle)
    result = await scheduler.schedule_session(request)
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, get_settings
from licensehub.app.metrics.collector import PREEMPTIONS_TOTAL, SESSIONS_SCHEDULED_TOTAL
from licensehub.core.clock import Clock, unix_now
from licensehub.core.domain import (
    OPEN_SESSION_STATUSES,
    InstanceStatus,
    LicenseType,
    ReservationStatus,
    SessionStatus,
    license_id_for,
)
from licensehub.core.errors import (
    ConflictError,
    ForbiddenError,
    LicenseHubError,
    UnavailableError,
    ValidationError,
)
from licensehub.core.logging_schema import Component, LogEvent
from licensehub.core.models import (
    Instance,
    LicenseReservation,
    ScheduledSession,
    generate_ulid,
)
from licensehub.core.schemas import (
    ActivationResult,
    Availability,
    CancelResult,
    CompletionResult,
    OnDemandDecision,
    ScheduleResult,
    SessionView,
)
from licensehub.services import license_policy, state_store
from licensehub.services.instance_service import InstanceLifecycleManager

logger = logging.getLogger(__name__)


def peak_overlap(intervals: Iterable[tuple[int, int]]) -> int:
    """Maximum number of half-open [start, end) intervals covering one instant."""
    events: list[tuple[int, int]] = []
    for start, end in intervals:
        if end > start:
            events.append((start, 1))
            events.append((end, -1))
    # Ends sort before starts at the same instant: [a, b) and [b, c) never overlap
    events.sort()
    current = peak = 0
    for _, delta in events:
        current += delta
        peak = max(peak, current)
    return peak


@dataclass
class SessionRequest:
    """Parameters of a schedule-session call."""

    user_id: str
    username: str
    start_time: int
    end_time: int
    license_type: LicenseType
    title: str | None = None
    description: str | None = None
    preferred_license_id: str | None = None


@dataclass
class LicenseLoad:
    """Occupancy of one license over a requested window."""

    license_id: str
    capacity: int
    reservations: list[LicenseReservation] = field(default_factory=list)
    on_demand: Instance | None = None
    peak: int = 0
    peak_without_on_demand: int = 0

    @property
    def free(self) -> bool:
        return self.peak < self.capacity

    @property
    def preemptable(self) -> bool:
        """Full only because of the owner's on-demand instance."""
        return (
            self.on_demand is not None
            and not self.free
            and self.peak_without_on_demand < self.capacity
        )


class LicenseScheduler:
    """Availability, reservation and conflict resolution for licenses."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: InstanceLifecycleManager,
        clock: Clock = unix_now,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._sessions = session_factory
        self._lifecycle = lifecycle
        self._clock = clock
        self._policy = settings.policy

    # =========================================================================
    # Availability
    # =========================================================================

    async def license_load(
        self,
        db: AsyncSession,
        license_id: str,
        start: int,
        end: int,
        now: int,
    ) -> LicenseLoad:
        pool = await state_store.get_pool(db, license_id)
        capacity = pool.max_concurrent_users if pool is not None and pool.is_active else 1
        reservations = await state_store.active_reservations_overlapping(db, license_id, start, end)

        result = await db.execute(
            select(Instance).where(
                Instance.license_owner_id == license_id,
                Instance.linked_session_id.is_(None),
                Instance.task_ref.is_not(None),
            )
        )
        on_demand = None
        busy_until = end
        for instance in result.scalars().all():
            # An overdue instance still holds the license until the shutdown sweep stops it
            busy_until = max(instance.auto_shutdown_at or end, now + 1)
            if start < busy_until and end > now:
                on_demand = instance
                break

        windows = [(max(r.start_time, start), min(r.end_time, end)) for r in reservations]
        peak_without = peak_overlap(windows)
        peak = peak_without
        if on_demand is not None:
            peak = peak_overlap([*windows, (max(now, start), min(busy_until, end))])

        return LicenseLoad(
            license_id=license_id,
            capacity=capacity,
            reservations=reservations,
            on_demand=on_demand,
            peak=peak,
            peak_without_on_demand=peak_without,
        )

    async def _candidate_ids(
        self,
        db: AsyncSession,
        license_type: LicenseType,
        requesting_user_id: str | None,
        preferred_license_id: str | None,
    ) -> list[str]:
        if license_type == LicenseType.BYOL:
            if not requesting_user_id:
                raise ValidationError("BYOL availability requires a requesting user")
            own = license_id_for(requesting_user_id)
            if preferred_license_id and preferred_license_id != own:
                raise ValidationError("BYOL sessions can only use the requester's own license")
            return [own]

        pools = await state_store.list_pools(db, active_only=True)
        ordered = [p.license_id for p in pools]
        if requesting_user_id:
            own = license_id_for(requesting_user_id)
            if own in ordered:
                # A sharer's own license stands in for the pool
                ordered.remove(own)
                ordered.insert(0, own)
        if preferred_license_id in ordered:
            ordered.remove(preferred_license_id)
            ordered.insert(0, preferred_license_id)
        return ordered

    async def _evaluate(
        self,
        db: AsyncSession,
        license_type: LicenseType,
        start: int,
        end: int,
        now: int,
        requesting_user_id: str | None = None,
        preferred_license_id: str | None = None,
    ) -> Availability:
        candidates = await self._candidate_ids(
            db, license_type, requesting_user_id, preferred_license_id
        )
        loads = [await self.license_load(db, lid, start, end, now) for lid in candidates]

        availability = Availability(available=False)
        for load in loads:
            if load.free:
                availability.candidate_licenses.append(load.license_id)
                continue
            availability.conflicting_reservations.extend(r.reservation_id for r in load.reservations)
            if load.on_demand is not None:
                availability.conflicting_instances.append(load.on_demand.user_id)
            if load.preemptable:
                availability.preemptable[load.license_id] = load.on_demand.user_id
        availability.available = bool(availability.candidate_licenses)
        return availability

    async def check_availability(
        self,
        license_type: LicenseType,
        start_time: int,
        end_time: int,
        preferred_license_id: str | None = None,
        requesting_user_id: str | None = None,
    ) -> Availability:
        """Free licenses for [start_time, end_time), best candidate first.

        Raises:
            ValidationError: If the window is malformed or a BYOL request names
                another user's license
        """
        _validate_window(start_time, end_time)
        async with self._sessions() as db:
            availability = await self._evaluate(
                db,
                license_type,
                start_time,
                end_time,
                self._clock(),
                requesting_user_id=requesting_user_id,
                preferred_license_id=preferred_license_id,
            )
        return availability

    async def can_start_on_demand(self, user_id: str) -> OnDemandDecision:
        async with self._sessions() as db:
            instance = await state_store.get_instance(db, user_id)
            return await license_policy.evaluate_on_demand(db, instance, self._clock(), self._policy)

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule_session(self, request: SessionRequest) -> ScheduleResult:
        """Reserve a license for a window, preempting on-demand usage if needed.

        The session and its reservation are written in one transaction after
        the chosen license is locked and re-evaluated.

        Raises:
            ValidationError: If the window is malformed or already over
            UnavailableError: If no license is free even after preemption
            UpstreamFailureError: If preempting an instance failed
        """
        now = self._clock()
        _validate_window(request.start_time, request.end_time)
        if request.end_time <= now:
            raise ValidationError("Session window has already ended")

        async with self._sessions() as db:
            availability = await self._evaluate(
                db,
                request.license_type,
                request.start_time,
                request.end_time,
                now,
                requesting_user_id=request.user_id,
                preferred_license_id=request.preferred_license_id,
            )

        conflicts_resolved: list[str] = []
        preferred = request.preferred_license_id
        if not availability.available:
            if not availability.preemptable:
                raise UnavailableError()
            license_id, owner_id = next(iter(availability.preemptable.items()))
            if await self._preempt(owner_id, license_id, reason="schedule-session"):
                conflicts_resolved.append(owner_id)
            preferred = license_id
            now = self._clock()

        async with self._sessions() as db:
            availability = await self._evaluate(
                db,
                request.license_type,
                request.start_time,
                request.end_time,
                now,
                requesting_user_id=request.user_id,
                preferred_license_id=preferred,
            )
            if not availability.available:
                raise UnavailableError()

            license_id = availability.candidate_licenses[0]
            await state_store.lock_license(db, license_id)
            load = await self.license_load(db, license_id, request.start_time, request.end_time, now)
            if not load.free:
                raise UnavailableError()

            session = ScheduledSession(
                session_id=generate_ulid(),
                user_id=request.user_id,
                username=request.username,
                start_time=request.start_time,
                end_time=request.end_time,
                license_type=request.license_type,
                license_id=license_id,
                title=request.title,
                description=request.description,
                status=SessionStatus.SCHEDULED,
                created_at=now,
                updated_at=now,
            )
            await state_store.insert_session_with_reservation(
                db, session, self._reservation_for(session, license_id, now)
            )
            await db.commit()

        SESSIONS_SCHEDULED_TOTAL.labels(license_type=request.license_type).inc()
        logger.info(
            "Session scheduled",
            extra={
                "event": LogEvent.SESSION_SCHEDULED,
                "component": Component.SCHEDULER,
                "session_id": session.session_id,
                "user_id": request.user_id,
                "license_id": license_id,
                "start_time": request.start_time,
                "end_time": request.end_time,
                "conflicts_resolved": conflicts_resolved,
            },
        )
        return ScheduleResult(
            session_id=session.session_id,
            license_id=license_id,
            status=SessionStatus.SCHEDULED,
            start_time=request.start_time,
            end_time=request.end_time,
            conflicts_resolved=conflicts_resolved,
        )

    @staticmethod
    def _reservation_for(session: ScheduledSession, license_id: str, now: int) -> LicenseReservation:
        return LicenseReservation(
            reservation_id=generate_ulid(),
            license_id=license_id,
            session_id=session.session_id,
            user_id=session.user_id,
            start_time=session.start_time,
            end_time=session.end_time,
            status=ReservationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )

    async def _preempt(self, owner_id: str, license_id: str, reason: str) -> bool:
        """Stop the owner's on-demand instance. False if it was already gone."""
        view = await self._lifecycle.status(owner_id)
        if view.status not in (InstanceStatus.STARTING, InstanceStatus.RUNNING):
            return False
        result = await self._lifecycle.stop(owner_id)
        PREEMPTIONS_TOTAL.inc()
        logger.warning(
            "On-demand instance preempted",
            extra={
                "event": LogEvent.LICENSE_PREEMPTED,
                "component": Component.SCHEDULER,
                "user_id": owner_id,
                "license_id": license_id,
                "reason": reason,
            },
        )
        return not result.already_stopped

    # =========================================================================
    # Cancellation / listing
    # =========================================================================

    async def cancel_session(
        self,
        session_id: str,
        requested_by: str,
        is_admin: bool = False,
    ) -> CancelResult:
        """Cancel a session and its reservations; stop its instance if active.

        Raises:
            NotFoundError: If the session does not exist
            ForbiddenError: If the caller neither owns the session nor is an admin
            ConflictError: If the session is already completed or cancelled
        """
        now = self._clock()
        async with self._sessions() as db:
            session = await state_store.require_scheduled_session(db, session_id)
            if session.user_id != requested_by and not is_admin:
                raise ForbiddenError("You can only cancel your own sessions")
            if session.status not in OPEN_SESSION_STATUSES:
                raise ConflictError(f"Session is already {session.status}")
            was_active = session.status == SessionStatus.ACTIVE
            cancelled, reservations = await state_store.cancel_session_and_reservations(
                db, session_id, now
            )
            await db.commit()

        if not cancelled:
            raise ConflictError("Session changed state while cancelling")

        instance_stopped = False
        if was_active:
            instance_stopped = await self._stop_linked_instance(session)

        logger.info(
            "Session cancelled",
            extra={
                "event": LogEvent.SESSION_CANCELLED,
                "component": Component.SCHEDULER,
                "session_id": session_id,
                "requested_by": requested_by,
                "admin": is_admin,
                "reservations_cancelled": reservations,
            },
        )
        return CancelResult(
            session_id=session_id,
            status=SessionStatus.CANCELLED,
            reservations_cancelled=reservations,
            instance_stopped=instance_stopped,
        )

    async def _stop_linked_instance(self, session: ScheduledSession) -> bool:
        user_id = session.instance_id or session.user_id
        async with self._sessions() as db:
            instance = await state_store.get_instance(db, user_id)
        if instance is None or instance.linked_session_id != session.session_id:
            return False
        result = await self._lifecycle.stop(user_id)
        return not result.already_stopped

    async def get_session(self, session_id: str) -> SessionView:
        async with self._sessions() as db:
            return SessionView.of(await state_store.require_scheduled_session(db, session_id))

    async def list_sessions(
        self,
        user_id: str | None = None,
        include_closed: bool = False,
    ) -> list[SessionView]:
        statuses = None if include_closed else set(OPEN_SESSION_STATUSES)
        async with self._sessions() as db:
            sessions = await state_store.list_sessions(db, user_id=user_id, statuses=statuses)
        return [SessionView.of(s) for s in sessions]

    # =========================================================================
    # Activation / completion
    # =========================================================================

    async def activate_session(self, session_id: str, require_started: bool = False) -> ActivationResult:
        """Promote a scheduled session to active and start its instance.

        Safe to call concurrently: only the caller whose scheduled→active
        write wins starts the instance; everyone else gets a skip.

        Raises:
            NotFoundError: If the session does not exist
            ConflictError: If ``require_started`` and the window has not opened
            LicenseHubError: If license resolution or the start failed
                (the session is returned to scheduled with the error recorded)
        """
        now = self._clock()
        async with self._sessions() as db:
            session = await state_store.require_scheduled_session(db, session_id)
        if session.status != SessionStatus.SCHEDULED:
            return ActivationResult(
                session_id=session_id, activated=False, skipped_reason=f"Session is {session.status}"
            )
        if session.end_time <= now:
            return ActivationResult(
                session_id=session_id, activated=False, skipped_reason="Session window has ended"
            )
        if require_started and now < session.start_time - self._policy.prep_lead_seconds:
            raise ConflictError("Session start time has not arrived")

        try:
            license_id = await self._resolve_license(session, now)
            await self._clear_license(session, license_id)
        except LicenseHubError as exc:
            await self._record_prep_failure(session, exc)
            raise

        async with self._sessions() as db:
            claimed = await state_store.transition_session(
                db,
                session_id,
                SessionStatus.SCHEDULED,
                self._clock(),
                status=SessionStatus.ACTIVE,
                instance_id=session.user_id,
                license_id=license_id,
            )
            await db.commit()
        if not claimed:
            return ActivationResult(
                session_id=session_id, activated=False, skipped_reason="Session already promoted"
            )

        session.license_id = license_id
        session.status = SessionStatus.ACTIVE
        try:
            started = await self._lifecycle.start_for_session(session.user_id, session)
        except Exception as exc:
            await self._revert_activation(session, exc)
            raise

        async with self._sessions() as db:
            current = await state_store.get_scheduled_session(db, session_id)
        if current is None or current.status != SessionStatus.ACTIVE:
            # Cancelled while the instance was starting
            await self._stop_linked_instance(session)
            return ActivationResult(
                session_id=session_id, activated=False, skipped_reason="Session cancelled while starting"
            )

        logger.info(
            "Session activated",
            extra={
                "event": LogEvent.SESSION_ACTIVATED,
                "component": Component.PREP,
                "session_id": session_id,
                "user_id": session.user_id,
                "license_id": license_id,
            },
        )
        return ActivationResult(
            session_id=session_id, activated=True, license_id=license_id, url=started.url
        )

    async def _resolve_license(self, session: ScheduledSession, now: int) -> str:
        """License to run the session on, rebinding pooled sessions if needed.

        A pooled session is rebound when it has no license yet or its pool was
        deactivated (sharing stopped, owner credentials gone).

        Raises:
            UnavailableError: If no other pooled license is free for the window
        """
        async with self._sessions() as db:
            if session.license_id is not None:
                if session.license_type != LicenseType.POOLED:
                    return session.license_id
                pool = await state_store.get_pool(db, session.license_id)
                if pool is not None and pool.is_active:
                    return session.license_id

            previous = session.license_id
            await state_store.close_session_reservations(
                db, session.session_id, ReservationStatus.CANCELLED, now
            )
            availability = await self._evaluate(
                db,
                LicenseType(session.license_type),
                session.start_time,
                session.end_time,
                now,
                requesting_user_id=session.user_id,
            )
            if not availability.available:
                raise UnavailableError("No pooled license is free for this session")

            license_id = availability.candidate_licenses[0]
            await state_store.lock_license(db, license_id)
            await state_store.insert_reservation(db, self._reservation_for(session, license_id, now))
            await state_store.update_session(db, session.session_id, now, license_id=license_id)
            await db.commit()

        logger.warning(
            "Session rebound to a new license",
            extra={
                "event": LogEvent.LICENSE_REBOUND,
                "component": Component.PREP,
                "session_id": session.session_id,
                "previous_license_id": previous,
                "license_id": license_id,
            },
        )
        session.license_id = license_id
        return license_id

    async def _clear_license(self, session: ScheduledSession, license_id: str) -> None:
        """Preempt an on-demand instance that would overrun the license at start."""
        now = self._clock()
        async with self._sessions() as db:
            load = await self.license_load(db, license_id, session.start_time, session.end_time, now)
        owner = load.on_demand
        if owner is None or owner.user_id == session.user_id:
            # The session owner's own instance is restarted by start_for_session
            return
        if load.peak > load.capacity:
            await self._preempt(owner.user_id, license_id, reason="session-prep")

    async def _record_prep_failure(self, session: ScheduledSession, exc: Exception) -> None:
        now = self._clock()
        attempts = session.prep_attempts + 1
        give_up = attempts >= self._policy.max_prep_attempts
        async with self._sessions() as db:
            await state_store.update_session(
                db, session.session_id, now, prep_attempts=attempts, last_error=str(exc)[:1000]
            )
            if give_up:
                await state_store.cancel_session_and_reservations(
                    db, session.session_id, now, expected={SessionStatus.SCHEDULED}
                )
            await db.commit()

        logger.error(
            "Session preparation failed",
            extra={
                "event": LogEvent.SESSION_PREP_FAILED,
                "component": Component.PREP,
                "session_id": session.session_id,
                "user_id": session.user_id,
                "attempt": attempts,
                "gave_up": give_up,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )

    async def _revert_activation(self, session: ScheduledSession, exc: Exception) -> None:
        async with self._sessions() as db:
            await state_store.transition_session(
                db, session.session_id, SessionStatus.ACTIVE, self._clock(),
                status=SessionStatus.SCHEDULED, instance_id=None,
            )
            await db.commit()
        await self._record_prep_failure(session, exc)

    async def complete_session(self, session_id: str) -> CompletionResult:
        """End an active session now: stop its instance, close its reservations.

        Raises:
            NotFoundError: If the session does not exist
            ConflictError: If the session is not active
        """
        async with self._sessions() as db:
            session = await state_store.require_scheduled_session(db, session_id)
        if session.status != SessionStatus.ACTIVE:
            raise ConflictError("Session is not active")

        instance_stopped = await self._stop_linked_instance(session)
        completed, reservations = await self.close_session(session_id)
        return CompletionResult(
            session_id=session_id,
            completed=completed,
            instance_stopped=instance_stopped,
            reservations_completed=reservations,
        )

    async def close_session(self, session_id: str) -> tuple[bool, int]:
        """Mark an active session and its reservations completed (no compute calls)."""
        async with self._sessions() as db:
            completed, reservations = await state_store.complete_session_and_reservations(
                db, session_id, self._clock()
            )
            await db.commit()
        if completed:
            logger.info(
                "Session completed",
                extra={
                    "event": LogEvent.SESSION_COMPLETED,
                    "session_id": session_id,
                    "reservations_completed": reservations,
                },
            )
        return completed, reservations


def _validate_window(start_time: int, end_time: int) -> None:
    if start_time < 0 or end_time < 0:
        raise ValidationError("Session times must be unix timestamps")
    if end_time <= start_time:
        raise ValidationError("endTime must be after startTime")
