"""Service graph construction.

Everything the dispatcher and the sweeps need, built once per process from a
session factory and a set of collaborators.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, get_settings
from licensehub.control.sweeps import AutoShutdownSweep, MetricsSweep, SessionPrepSweep
from licensehub.core.clock import Clock, unix_now
from licensehub.core.interfaces import Collaborators
from licensehub.dispatch import Dispatcher
from licensehub.services.admin_service import AdminService
from licensehub.services.instance_service import InstanceLifecycleManager
from licensehub.services.license_scheduler import LicenseScheduler
from licensehub.services.usage_ledger import UsageService


@dataclass
class ServiceContainer:
    lifecycle: InstanceLifecycleManager
    scheduler: LicenseScheduler
    admin: AdminService
    usage: UsageService
    prep_sweep: SessionPrepSweep
    shutdown_sweep: AutoShutdownSweep
    metrics_sweep: MetricsSweep
    dispatcher: Dispatcher


def build_container(
    session_factory: async_sessionmaker[AsyncSession],
    collaborators: Collaborators,
    clock: Clock = unix_now,
    settings: Settings | None = None,
) -> ServiceContainer:
    settings = settings or get_settings()

    lifecycle = InstanceLifecycleManager(session_factory, collaborators, clock, settings)
    scheduler = LicenseScheduler(session_factory, lifecycle, clock, settings)
    prep_sweep = SessionPrepSweep(session_factory, scheduler, clock, settings)
    shutdown_sweep = AutoShutdownSweep(session_factory, lifecycle, scheduler, clock, settings)
    admin = AdminService(session_factory, lifecycle, scheduler, shutdown_sweep, clock, settings)
    usage = UsageService(session_factory, clock, settings)

    return ServiceContainer(
        lifecycle=lifecycle,
        scheduler=scheduler,
        admin=admin,
        usage=usage,
        prep_sweep=prep_sweep,
        shutdown_sweep=shutdown_sweep,
        metrics_sweep=MetricsSweep(session_factory, settings),
        dispatcher=Dispatcher(
            lifecycle, scheduler, admin, usage, prep_sweep, shutdown_sweep, settings
        ),
    )
