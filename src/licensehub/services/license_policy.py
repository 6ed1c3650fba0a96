"""License policy: on-demand admission and auto-shutdown deadlines."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from licensehub.app.config import PolicyConfig
from licensehub.core.domain import (
    OPEN_SESSION_STATUSES,
    LicenseType,
    license_id_for,
)
from licensehub.core.models import Instance, ScheduledSession
from licensehub.core.schemas import OnDemandDecision


def auto_shutdown_at(
    license_type: LicenseType | str,
    session_end: int | None,
    started_at: int,
    policy: PolicyConfig,
) -> int:
    """Deadline after which the Auto-Shutdown Sweep may stop the instance.

    Session-backed instances live until the session ends (plus grace);
    on-demand BYOL instances get the idle budget; pooled instances without
    a session fall back to the pooled default.
    """
    if session_end is not None:
        return session_end + policy.session_grace_seconds
    if license_type == LicenseType.BYOL:
        return started_at + policy.on_demand_idle_seconds
    return started_at + policy.pooled_default_seconds


async def on_demand_blocker(
    db: AsyncSession,
    instance: Instance,
    now: int,
    policy: PolicyConfig,
) -> ScheduledSession | None:
    """Open session reserving the user's own license now or in the near future."""
    horizon = now + policy.on_demand_conflict_window_seconds
    result = await db.execute(
        select(ScheduledSession)
        .where(
            ScheduledSession.license_id == license_id_for(instance.user_id),
            ScheduledSession.status.in_([s.value for s in OPEN_SESSION_STATUSES]),
            ScheduledSession.start_time <= horizon,
            ScheduledSession.end_time > now,
        )
        .order_by(ScheduledSession.start_time)
    )
    return result.scalars().first()


async def evaluate_on_demand(
    db: AsyncSession,
    instance: Instance | None,
    now: int,
    policy: PolicyConfig,
) -> OnDemandDecision:
    if instance is None:
        return OnDemandDecision(can_start=False, reason="No instance found")
    if instance.license_type != LicenseType.BYOL:
        return OnDemandDecision(
            can_start=False,
            reason="Only BYOL instances can start on-demand",
        )
    blocker = await on_demand_blocker(db, instance, now, policy)
    if blocker is not None:
        return OnDemandDecision(
            can_start=False,
            reason="A scheduled session is about to start using this license",
            conflicting_session=blocker.session_id,
        )
    return OnDemandDecision(can_start=True)
