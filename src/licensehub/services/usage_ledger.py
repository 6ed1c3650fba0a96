"""Usage Ledger: run intervals, donations, and monthly cost.

Intervals are attributed to the billing month of their stop time. An
interval opened by record_start stays open (stop_ts is None) until
record_stop closes it; closing is idempotent per start timestamp.
"""

import logging
import re
from collections import defaultdict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, UsageConfig, get_settings
from licensehub.core.clock import Clock, billing_period, unix_now
from licensehub.core.errors import ValidationError
from licensehub.core.logging_schema import LogEvent
from licensehub.core.models import Donation, UsageInterval
from licensehub.core.schemas import AllCosts, DonationReceipt, UserCosts

logger = logging.getLogger(__name__)


def _round_money(value: float) -> float:
    return round(value, 2)


async def record_start(db: AsyncSession, user_id: str, ts: int) -> None:
    """Open a run interval for a user."""
    db.add(UsageInterval(user_id=user_id, period=billing_period(ts), start_ts=ts))
    await db.flush()


async def record_stop(db: AsyncSession, user_id: str, start_ts: int, stop_ts: int) -> float:
    """Close the interval that started at start_ts.

    Durations <= 0 are not recorded. If no matching open interval exists
    (e.g. it was opened before the ledger existed), a closed one is appended.

    Returns:
        Hours recorded (0.0 if nothing was recorded)
    """
    duration = stop_ts - start_ts
    result = await db.execute(
        select(UsageInterval).where(
            UsageInterval.user_id == user_id,
            UsageInterval.start_ts == start_ts,
        )
    )
    interval = result.scalars().first()

    if duration <= 0:
        if interval is not None and interval.stop_ts is None:
            await db.delete(interval)
            await db.flush()
        return 0.0

    if interval is not None and interval.stop_ts is not None:
        # Already closed by a concurrent stop
        return 0.0

    hours = duration / 3600
    period = billing_period(stop_ts)
    if interval is None:
        interval = UsageInterval(user_id=user_id, period=period, start_ts=start_ts)
        db.add(interval)
    interval.stop_ts = stop_ts
    interval.hours = hours
    interval.period = period
    await db.flush()

    logger.info(
        "Usage recorded",
        extra={
            "event": LogEvent.USAGE_RECORDED,
            "user_id": user_id,
            "hours": round(hours, 3),
            "period": period,
        },
    )
    return hours


async def get_current_month_usage(db: AsyncSession, now: int) -> float:
    """Total closed hours across all users in now's billing month."""
    result = await db.execute(
        select(func.coalesce(func.sum(UsageInterval.hours), 0.0)).where(
            UsageInterval.period == billing_period(now),
            UsageInterval.stop_ts.is_not(None),
        )
    )
    return float(result.scalar_one())


async def get_user_hours(db: AsyncSession, user_id: str, period: str) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(UsageInterval.hours), 0.0)).where(
            UsageInterval.user_id == user_id,
            UsageInterval.period == period,
            UsageInterval.stop_ts.is_not(None),
        )
    )
    return float(result.scalar_one())


async def get_user_monthly_costs(db: AsyncSession, user_id: str, now: int, rate: float) -> UserCosts:
    period = billing_period(now)
    hours = await get_user_hours(db, user_id, period)

    result = await db.execute(
        select(Donation)
        .where(Donation.user_id == user_id, Donation.period == period)
        .order_by(Donation.received_at.desc())
    )
    donations = list(result.scalars().all())
    donated = sum(d.amount for d in donations)

    total_cost = hours * rate
    return UserCosts(
        user_id=user_id,
        period=period,
        hours_used=round(hours, 2),
        total_cost=_round_money(total_cost),
        donations_received=_round_money(donated),
        last_donor_name=donations[0].donor_name if donations else None,
        uncovered_cost=_round_money(max(0.0, total_cost - donated)),
    )


async def get_all_users_costs(db: AsyncSession, now: int, rate: float) -> AllCosts:
    period = billing_period(now)

    hours_by_user: dict[str, float] = defaultdict(float)
    result = await db.execute(
        select(UsageInterval.user_id, func.sum(UsageInterval.hours))
        .where(UsageInterval.period == period, UsageInterval.stop_ts.is_not(None))
        .group_by(UsageInterval.user_id)
    )
    for user_id, hours in result.all():
        hours_by_user[user_id] = float(hours or 0.0)

    donated_by_user: dict[str, float] = defaultdict(float)
    last_donor: dict[str, str | None] = {}
    result = await db.execute(
        select(Donation).where(Donation.period == period).order_by(Donation.received_at)
    )
    total_donations = 0.0
    for donation in result.scalars().all():
        total_donations += donation.amount
        if donation.user_id is not None:
            donated_by_user[donation.user_id] += donation.amount
            last_donor[donation.user_id] = donation.donor_name

    users = []
    for user_id in sorted(set(hours_by_user) | set(donated_by_user)):
        cost = hours_by_user[user_id] * rate
        donated = donated_by_user[user_id]
        users.append(
            UserCosts(
                user_id=user_id,
                period=period,
                hours_used=round(hours_by_user[user_id], 2),
                total_cost=_round_money(cost),
                donations_received=_round_money(donated),
                last_donor_name=last_donor.get(user_id),
                uncovered_cost=_round_money(max(0.0, cost - donated)),
            )
        )

    total_hours = sum(hours_by_user.values())
    total_costs = total_hours * rate
    return AllCosts(
        period=period,
        total_hours=round(total_hours, 2),
        total_costs=_round_money(total_costs),
        total_donations=_round_money(total_donations),
        total_uncovered=_round_money(max(0.0, total_costs - total_donations)),
        users=users,
    )


def extract_donor_user_id(message: str | None, pattern: str) -> str | None:
    """Find the user identifier embedded in a donation message."""
    if not message:
        return None
    match = re.search(pattern, message, re.IGNORECASE)
    return match.group(1) if match else None


async def record_donation(
    db: AsyncSession,
    amount: float,
    donor_name: str | None,
    message: str | None,
    now: int,
    pattern: str,
) -> Donation:
    """Store a donation, attributed to the user ``pattern`` finds in its message."""
    user_id = extract_donor_user_id(message, pattern)
    donation = Donation(
        user_id=user_id,
        period=billing_period(now),
        amount=amount,
        donor_name=donor_name,
        message=message,
        received_at=now,
    )
    db.add(donation)
    await db.flush()

    logger.info(
        "Donation received",
        extra={
            "event": LogEvent.DONATION_RECEIVED,
            "user_id": user_id,
            "amount": amount,
            "attributed": user_id is not None,
        },
    )
    return donation


class UsageService:
    """Session-owning facade over the ledger for the dispatcher."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = unix_now,
        settings: Settings | None = None,
    ) -> None:
        self._sessions = session_factory
        self._clock = clock
        self._usage: UsageConfig = (settings or get_settings()).usage

    async def user_costs(self, user_id: str) -> UserCosts:
        async with self._sessions() as db:
            return await get_user_monthly_costs(db, user_id, self._clock(), self._usage.cost_per_hour)

    async def all_costs(self) -> AllCosts:
        async with self._sessions() as db:
            return await get_all_users_costs(db, self._clock(), self._usage.cost_per_hour)

    async def donation(
        self,
        amount: float,
        donor_name: str | None,
        message: str | None,
    ) -> DonationReceipt:
        if amount <= 0:
            raise ValidationError("Donation amount must be positive")
        async with self._sessions() as db:
            donation = await record_donation(
                db, amount, donor_name, message, self._clock(), self._usage.donation_user_pattern
            )
            await db.commit()
        return DonationReceipt(
            donation_id=donation.id,
            user_id=donation.user_id,
            amount=donation.amount,
            attributed=donation.user_id is not None,
        )
