"""Wall clock in unix seconds, injectable for tests."""

import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], int]


def unix_now() -> int:
    return int(time.time())


def billing_period(ts: int) -> str:
    """Billing month (YYYY-MM, UTC) containing ts."""
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m")


def month_start(ts: int) -> int:
    """Unix seconds at the start of ts's UTC month."""
    dt = datetime.fromtimestamp(ts, tz=UTC)
    return int(dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0).timestamp())
