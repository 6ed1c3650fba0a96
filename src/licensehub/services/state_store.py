"""State Store access layer.

Queries and conditional writes for every entity. Functions here never
commit; the calling service owns the transaction boundary.

Conditional writes ("update to X only if still Y") return False when the
precondition no longer holds. Callers treat that as a benign skip.
"""

import logging
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from licensehub.app.metrics.collector import CONDITIONAL_WRITE_SKIPS_TOTAL
from licensehub.core.domain import (
    OPEN_SESSION_STATUSES,
    InstanceStatus,
    ReservationStatus,
    SessionStatus,
)
from licensehub.core.errors import ConflictError, NotFoundError, ValidationError
from licensehub.core.logging_schema import LogEvent
from licensehub.core.models import (
    Instance,
    LicensePool,
    LicenseReservation,
    ScheduledSession,
)
from licensehub.infra.postgresql import advisory_xact_lock

logger = logging.getLogger(__name__)

# Session window columns are fixed once the reservation exists
_IMMUTABLE_SESSION_FIELDS = frozenset({"start_time", "end_time"})


def _skipped(entity: str, key: str, **extra: Any) -> bool:
    CONDITIONAL_WRITE_SKIPS_TOTAL.labels(entity=entity).inc()
    logger.debug(
        "Conditional write skipped",
        extra={"event": LogEvent.CONDITIONAL_WRITE_SKIPPED, "entity": entity, "key": key, **extra},
    )
    return False


# =============================================================================
# Instances
# =============================================================================


async def get_instance(db: AsyncSession, user_id: str) -> Instance | None:
    result = await db.execute(select(Instance).where(Instance.user_id == user_id))
    return result.scalar_one_or_none()


async def require_instance(db: AsyncSession, user_id: str) -> Instance:
    """Get instance or raise.

    Raises:
        NotFoundError: If the user has no instance
    """
    instance = await get_instance(db, user_id)
    if instance is None:
        raise NotFoundError("Instance not found")
    return instance


async def list_instances(
    db: AsyncSession,
    statuses: set[InstanceStatus] | None = None,
) -> list[Instance]:
    stmt = select(Instance).order_by(Instance.created_at)
    if statuses:
        stmt = stmt.where(Instance.status.in_([s.value for s in statuses]))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def insert_instance(db: AsyncSession, instance: Instance) -> None:
    """Insert a new instance row.

    Raises:
        ConflictError: If the user already has an instance, or another
            instance already serves the same host name
    """
    user_id, host = instance.user_id, instance.sanitized_username
    db.add(instance)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        if await get_instance(db, user_id) is not None:
            raise ConflictError("Instance already exists") from exc
        raise ConflictError(f"Username '{host}' is already in use by another instance") from exc


async def update_instance(db: AsyncSession, user_id: str, now: int, **values: Any) -> None:
    await db.execute(
        update(Instance)
        .where(Instance.user_id == user_id)
        .values(updated_at=now, **values)
    )


async def transition_instance(
    db: AsyncSession,
    user_id: str,
    *conditions: Any,
    now: int,
    **values: Any,
) -> bool:
    """Update an instance only if every condition still holds.

    Example:
        await transition_instance(
            db, user_id, Instance.task_ref == observed_task,
            now=now, status=InstanceStatus.STOPPED, task_ref=None,
        )
    """
    result = await db.execute(
        update(Instance)
        .where(Instance.user_id == user_id, *conditions)
        .values(updated_at=now, **values)
    )
    if result.rowcount == 0:
        return _skipped("instance", user_id)
    return True


async def delete_instance(db: AsyncSession, user_id: str) -> bool:
    result = await db.execute(delete(Instance).where(Instance.user_id == user_id))
    return result.rowcount > 0


# =============================================================================
# License pools
# =============================================================================


async def get_pool(db: AsyncSession, license_id: str) -> LicensePool | None:
    result = await db.execute(select(LicensePool).where(LicensePool.license_id == license_id))
    return result.scalar_one_or_none()


async def list_pools(db: AsyncSession, active_only: bool = False) -> list[LicensePool]:
    """Pools ordered by creation (ties in candidate selection go to the oldest)."""
    stmt = select(LicensePool).order_by(LicensePool.created_at, LicensePool.license_id)
    if active_only:
        stmt = stmt.where(LicensePool.is_active.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def upsert_pool(
    db: AsyncSession,
    license_id: str,
    owner_id: str,
    owner_username: str,
    max_concurrent_users: int,
    now: int,
) -> tuple[LicensePool, bool]:
    """Create or reactivate a pool.

    Returns:
        (pool, created) where created is False for a reactivation
    """
    pool = await get_pool(db, license_id)
    if pool is None:
        pool = LicensePool(
            license_id=license_id,
            owner_id=owner_id,
            owner_username=owner_username,
            max_concurrent_users=max_concurrent_users,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        db.add(pool)
        await db.flush()
        return pool, True

    pool.owner_username = owner_username
    pool.max_concurrent_users = max_concurrent_users
    pool.is_active = True
    pool.updated_at = now
    await db.flush()
    return pool, False


async def set_pool_active(db: AsyncSession, license_id: str, active: bool, now: int) -> bool:
    """Flip a pool's active flag. False if missing or already in that state."""
    result = await db.execute(
        update(LicensePool)
        .where(LicensePool.license_id == license_id, LicensePool.is_active.is_(not active))
        .values(is_active=active, updated_at=now)
    )
    if result.rowcount == 0:
        return _skipped("license_pool", license_id)
    return True


async def lock_license(db: AsyncSession, license_id: str) -> None:
    """Serialize admission decisions for one license within this transaction."""
    await advisory_xact_lock(db, f"license:{license_id}")


# =============================================================================
# Scheduled sessions
# =============================================================================


async def get_scheduled_session(db: AsyncSession, session_id: str) -> ScheduledSession | None:
    result = await db.execute(
        select(ScheduledSession).where(ScheduledSession.session_id == session_id)
    )
    return result.scalar_one_or_none()


async def require_scheduled_session(db: AsyncSession, session_id: str) -> ScheduledSession:
    """Get session or raise.

    Raises:
        NotFoundError: If the session does not exist
    """
    session = await get_scheduled_session(db, session_id)
    if session is None:
        raise NotFoundError("Session not found")
    return session


async def list_sessions(
    db: AsyncSession,
    user_id: str | None = None,
    statuses: set[SessionStatus] | None = None,
) -> list[ScheduledSession]:
    stmt = select(ScheduledSession).order_by(ScheduledSession.start_time)
    if user_id is not None:
        stmt = stmt.where(ScheduledSession.user_id == user_id)
    if statuses:
        stmt = stmt.where(ScheduledSession.status.in_([s.value for s in statuses]))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_due_sessions(db: AsyncSession, until: int, now: int) -> list[ScheduledSession]:
    """Scheduled sessions starting by ``until`` whose window has not ended."""
    result = await db.execute(
        select(ScheduledSession)
        .where(
            ScheduledSession.status == SessionStatus.SCHEDULED.value,
            ScheduledSession.start_time <= until,
            ScheduledSession.end_time > now,
        )
        .order_by(ScheduledSession.start_time)
    )
    return list(result.scalars().all())


async def list_lapsed_sessions(
    db: AsyncSession,
    status: SessionStatus,
    now: int,
) -> list[ScheduledSession]:
    """Sessions still in ``status`` whose end_time has passed."""
    result = await db.execute(
        select(ScheduledSession).where(
            ScheduledSession.status == status.value,
            ScheduledSession.end_time <= now,
        )
    )
    return list(result.scalars().all())


async def list_license_sessions(
    db: AsyncSession,
    license_id: str,
    start: int,
    end: int,
) -> list[ScheduledSession]:
    """Open sessions on a license overlapping [start, end)."""
    result = await db.execute(
        select(ScheduledSession).where(
            ScheduledSession.license_id == license_id,
            ScheduledSession.status.in_([s.value for s in OPEN_SESSION_STATUSES]),
            ScheduledSession.start_time < end,
            ScheduledSession.end_time > start,
        )
    )
    return list(result.scalars().all())


def _guard_window(values: dict[str, Any]) -> None:
    changed = _IMMUTABLE_SESSION_FIELDS & values.keys()
    if changed:
        raise ValidationError(f"Session window is immutable: {', '.join(sorted(changed))}")


async def transition_session(
    db: AsyncSession,
    session_id: str,
    expected: SessionStatus | set[SessionStatus],
    now: int,
    **values: Any,
) -> bool:
    """Update a session only if its status is still ``expected``.

    Raises:
        ValidationError: If values touch start_time or end_time
    """
    _guard_window(values)
    allowed = expected if isinstance(expected, set) else {expected}
    result = await db.execute(
        update(ScheduledSession)
        .where(
            ScheduledSession.session_id == session_id,
            ScheduledSession.status.in_([s.value for s in allowed]),
        )
        .values(updated_at=now, **values)
    )
    if result.rowcount == 0:
        return _skipped("session", session_id)
    return True


async def update_session(db: AsyncSession, session_id: str, now: int, **values: Any) -> None:
    """Unconditional session update (bookkeeping fields only).

    Raises:
        ValidationError: If values touch start_time or end_time
    """
    _guard_window(values)
    await db.execute(
        update(ScheduledSession)
        .where(ScheduledSession.session_id == session_id)
        .values(updated_at=now, **values)
    )


# =============================================================================
# Reservations
# =============================================================================


async def active_reservations_overlapping(
    db: AsyncSession,
    license_id: str,
    start: int,
    end: int,
) -> list[LicenseReservation]:
    """Active reservations on a license whose [start, end) overlaps the window."""
    result = await db.execute(
        select(LicenseReservation)
        .where(
            LicenseReservation.license_id == license_id,
            LicenseReservation.status == ReservationStatus.ACTIVE.value,
            LicenseReservation.start_time < end,
            LicenseReservation.end_time > start,
        )
        .order_by(LicenseReservation.start_time)
    )
    return list(result.scalars().all())


async def list_reservations(
    db: AsyncSession,
    license_id: str | None = None,
    session_id: str | None = None,
    user_id: str | None = None,
    statuses: set[ReservationStatus] | None = None,
) -> list[LicenseReservation]:
    stmt = select(LicenseReservation).order_by(LicenseReservation.start_time)
    if license_id is not None:
        stmt = stmt.where(LicenseReservation.license_id == license_id)
    if session_id is not None:
        stmt = stmt.where(LicenseReservation.session_id == session_id)
    if user_id is not None:
        stmt = stmt.where(LicenseReservation.user_id == user_id)
    if statuses:
        stmt = stmt.where(LicenseReservation.status.in_([s.value for s in statuses]))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def insert_session_with_reservation(
    db: AsyncSession,
    session: ScheduledSession,
    reservation: LicenseReservation,
) -> None:
    """Stage a session and its reservation in the same transaction."""
    db.add(session)
    db.add(reservation)
    await db.flush()


async def insert_reservation(db: AsyncSession, reservation: LicenseReservation) -> None:
    db.add(reservation)
    await db.flush()


async def close_session_reservations(
    db: AsyncSession,
    session_id: str,
    status: ReservationStatus,
    now: int,
) -> int:
    """Move a session's active reservations to a terminal status."""
    result = await db.execute(
        update(LicenseReservation)
        .where(
            LicenseReservation.session_id == session_id,
            LicenseReservation.status == ReservationStatus.ACTIVE.value,
        )
        .values(status=status, updated_at=now)
    )
    return result.rowcount


async def cancel_all_active_reservations(db: AsyncSession, now: int) -> int:
    result = await db.execute(
        update(LicenseReservation)
        .where(LicenseReservation.status == ReservationStatus.ACTIVE.value)
        .values(status=ReservationStatus.CANCELLED, updated_at=now)
    )
    return result.rowcount


async def sessions_for_instance_user(
    db: AsyncSession,
    user_id: str,
) -> list[ScheduledSession]:
    """Open sessions owned by a user or bound to the user's instance."""
    result = await db.execute(
        select(ScheduledSession).where(
            or_(ScheduledSession.user_id == user_id, ScheduledSession.instance_id == user_id),
            ScheduledSession.status.in_([s.value for s in OPEN_SESSION_STATUSES]),
        )
    )
    return list(result.scalars().all())


async def cancel_user_reservations(db: AsyncSession, user_id: str, now: int) -> int:
    """Cancel active reservations held by a user's sessions."""
    result = await db.execute(
        update(LicenseReservation)
        .where(
            LicenseReservation.user_id == user_id,
            LicenseReservation.status == ReservationStatus.ACTIVE.value,
        )
        .values(status=ReservationStatus.CANCELLED, updated_at=now)
    )
    return result.rowcount


# =============================================================================
# Composite session transitions
# =============================================================================


async def cancel_session_and_reservations(
    db: AsyncSession,
    session_id: str,
    now: int,
    expected: set[SessionStatus] | None = None,
) -> tuple[bool, int]:
    """Cancel an open session and its active reservations together.

    Returns:
        (cancelled, reservations_cancelled); cancelled is False if the
        session was no longer in an expected status
    """
    cancelled = await transition_session(
        db,
        session_id,
        expected or set(OPEN_SESSION_STATUSES),
        now,
        status=SessionStatus.CANCELLED,
    )
    count = 0
    if cancelled:
        count = await close_session_reservations(db, session_id, ReservationStatus.CANCELLED, now)
    return cancelled, count


async def complete_session_and_reservations(
    db: AsyncSession,
    session_id: str,
    now: int,
) -> tuple[bool, int]:
    """Complete an active session and its active reservations together."""
    completed = await transition_session(
        db, session_id, SessionStatus.ACTIVE, now, status=SessionStatus.COMPLETED
    )
    count = 0
    if completed:
        count = await close_session_reservations(db, session_id, ReservationStatus.COMPLETED, now)
    return completed, count
