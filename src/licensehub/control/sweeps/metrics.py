"""Metrics Sweep - Gauge metrics update."""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, get_settings
from licensehub.app.metrics.collector import INSTANCES_BY_STATUS
from licensehub.control.sweeps.base import SweepBase
from licensehub.core.domain import InstanceStatus
from licensehub.core.models import Instance

logger = logging.getLogger(__name__)


class MetricsSweep(SweepBase):
    """Periodically refresh instance count gauges."""

    SWEEP_NAME = "metrics"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        super().__init__()
        settings = settings or get_settings()
        self._sessions = session_factory
        self.INTERVAL = settings.metrics.update_interval

    async def tick(self) -> None:
        try:
            async with self._sessions() as db:
                result = await db.execute(
                    select(Instance.status, func.count(Instance.user_id)).group_by(Instance.status)
                )
                rows = result.all()
        except Exception as e:
            logger.warning("[%s] Failed to update instance count metrics: %s", self.name, e)
            return

        # Reset all to 0 first (statuses with no instances)
        for status in InstanceStatus:
            INSTANCES_BY_STATUS.labels(status=status.value).set(0)
        for status_value, count in rows:
            INSTANCES_BY_STATUS.labels(status=status_value).set(count)
