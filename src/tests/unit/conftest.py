"""Shared fixtures: a throwaway SQLite state store, a settable clock and
collaborator mocks that behave like healthy AWS services."""

from collections.abc import AsyncIterator, Callable
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from licensehub.app.config import (
    AdminConfig,
    AwsConfig,
    DomainConfig,
    PolicyConfig,
    Settings,
    UsageConfig,
)
from licensehub.app.container import ServiceContainer, build_container
from licensehub.core.circuit_breaker import reset_all_circuit_breakers
from licensehub.core.domain import LicenseType, TaskStatus
from licensehub.core.interfaces import (
    Collaborators,
    ComputeLauncher,
    DnsManager,
    IdentityManager,
    LicenseCredentials,
    NetworkStorage,
    ObjectStorage,
    RoutingManager,
    ScopedCredential,
    SecretStore,
)
from licensehub.infra.postgresql import build_engine, build_session_factory, create_tables
from licensehub.services.instance_service import InstanceProfile

# 2026-01-01T00:00:00Z
T0 = 1_767_225_600


class FakeClock:
    """Manually advanced unix clock."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_circuit_breakers() -> None:
    """Reset global circuit breakers before each test."""
    reset_all_circuit_breakers()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        aws=AwsConfig(
            alb_dns_name="alb.example.internal",
            subnet_ids=["subnet-1"],
            security_group_id="sg-1",
        ),
        domain=DomainConfig(name="example.com"),
        policy=PolicyConfig(task_poll_interval_seconds=0.01),
        usage=UsageConfig(donation_verification_token="donation-secret"),
        admin=AdminConfig(user_ids=["admin-1"]),
    )


@pytest.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'licensehub.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def collaborators() -> Collaborators:
    """AWS collaborators that always succeed."""
    compute = AsyncMock(spec=ComputeLauncher)
    compute.register_task_template.return_value = "td-arn"
    compute.run.return_value = "task-arn"
    compute.status.return_value = TaskStatus.RUNNING
    compute.private_address.return_value = "10.0.0.5"

    routing = AsyncMock(spec=RoutingManager)
    routing.create_target.return_value = "tg-arn"
    routing.next_priority.return_value = 100
    routing.create_rule.return_value = "rule-arn"

    network_storage = AsyncMock(spec=NetworkStorage)
    network_storage.create_access_point.return_value = "fsap-1"

    object_storage = AsyncMock(spec=ObjectStorage)
    object_storage.create_bucket.return_value = "foundry-bucket"

    identity = AsyncMock(spec=IdentityManager)
    identity.create_scoped_credential.return_value = ScopedCredential(
        access_key_id="AKIA", secret_access_key="secret"
    )

    secrets = AsyncMock(spec=SecretStore)
    secrets.get.return_value = None
    secrets.put.return_value = "secret-arn"
    secrets.ref_for.side_effect = lambda user_id: f"licensehub/instances/{user_id}"

    return Collaborators(
        compute=compute,
        routing=routing,
        dns=AsyncMock(spec=DnsManager),
        network_storage=network_storage,
        object_storage=object_storage,
        identity=identity,
        secrets=secrets,
    )


@pytest.fixture
def container(
    session_factory: async_sessionmaker[AsyncSession],
    collaborators: Collaborators,
    clock: FakeClock,
    settings: Settings,
) -> ServiceContainer:
    return build_container(session_factory, collaborators, clock=clock, settings=settings)


@pytest.fixture
def admin_id(settings: Settings) -> str:
    return settings.admin.user_ids[0]


@pytest.fixture
def byol_profile() -> Callable[..., InstanceProfile]:
    """Factory for BYOL registrations with license credentials."""

    def make(username: str = "Alice", sharing: bool = False, max_users: int = 1) -> InstanceProfile:
        return InstanceProfile(
            username=username,
            license_type=LicenseType.BYOL,
            license_username="license-user",
            license_password="license-pass",
            allow_license_sharing=sharing,
            max_concurrent_users=max_users,
        )

    return make


@pytest.fixture
def pooled_profile() -> Callable[..., InstanceProfile]:
    def make(username: str = "Bob") -> InstanceProfile:
        return InstanceProfile(username=username, license_type=LicenseType.POOLED)

    return make


@pytest.fixture
def owner_credentials() -> LicenseCredentials:
    return LicenseCredentials(username="owner-user", password="owner-pass", admin_key="owner-key")
