"""Tests for the Instance Lifecycle Manager.

Collaborators are mocks; the state store is a real SQLite database.
"""

import pytest

from licensehub.app.container import ServiceContainer
from licensehub.core.domain import InstanceStatus, LicenseType, TaskStatus
from licensehub.core.errors import (
    ConflictError,
    NotFoundError,
    PolicyViolationError,
    UpstreamFailureError,
    ValidationError,
)
from licensehub.core.interfaces import Collaborators, LicenseCredentials
from licensehub.services import state_store, usage_ledger
from licensehub.services.instance_service import InstanceProfile
from licensehub.services.license_scheduler import SessionRequest

HOUR = 3600


class TestCreate:
    """Provisioning a new instance."""

    async def test_create_byol(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        result = await container.lifecycle.create("u1", byol_profile("Alice Smith"))

        assert result.url == "https://alice-smith.example.com"
        assert result.status == InstanceStatus.CREATED
        assert result.license_pool_created is False
        collaborators.network_storage.create_access_point.assert_awaited_once_with("u1")
        collaborators.object_storage.create_bucket.assert_awaited_once_with("u1", "alice-smith")
        collaborators.dns.upsert.assert_awaited_once_with("alice-smith.example.com", "alb.example.internal")
        stored = collaborators.secrets.put.await_args.args[1]
        assert (stored.username, stored.password) == ("license-user", "license-pass")

        view = await container.lifecycle.status("u1")
        assert view.status == InstanceStatus.CREATED
        assert view.license_owner_id == "byol-u1"

    async def test_create_with_sharing_opens_pool(self, container: ServiceContainer, session_factory, byol_profile) -> None:
        result = await container.lifecycle.create("u1", byol_profile(sharing=True, max_users=3))

        assert result.license_pool_created is True
        async with session_factory() as db:
            pool = await state_store.get_pool(db, "byol-u1")
        assert pool.is_active is True
        assert pool.max_concurrent_users == 3

    async def test_duplicate_create_conflicts(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())

        with pytest.raises(ConflictError):
            await container.lifecycle.create("u1", byol_profile())
        collaborators.network_storage.create_access_point.assert_awaited_once()

    async def test_host_collision_conflicts(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        """Usernames that sanitize to the same host cannot both hold an instance."""
        await container.lifecycle.create("u1", byol_profile("Bob"))

        with pytest.raises(ConflictError, match="already in use"):
            await container.lifecycle.create("u2", byol_profile("bob!"))
        collaborators.network_storage.create_access_point.assert_awaited_once()
        assert (await container.lifecycle.status("u1")).url == "https://bob.example.com"

    async def test_byol_requires_credentials(self, container: ServiceContainer) -> None:
        with pytest.raises(ValidationError):
            await container.lifecycle.create("u1", InstanceProfile(username="alice"))
        with pytest.raises(NotFoundError):
            await container.lifecycle.status("u1")

    async def test_pooled_cannot_share(self, container: ServiceContainer) -> None:
        profile = InstanceProfile(username="bob", license_type=LicenseType.POOLED, allow_license_sharing=True)
        with pytest.raises(ValidationError):
            await container.lifecycle.create("u2", profile)

    async def test_failed_provisioning_rolls_back(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        """Resources created before the failure are removed and the row is released."""
        collaborators.routing.create_target.side_effect = RuntimeError("quota exceeded")

        with pytest.raises(UpstreamFailureError):
            await container.lifecycle.create("u1", byol_profile())

        collaborators.identity.delete_scoped_credential.assert_awaited_once_with("u1")
        collaborators.object_storage.delete_bucket.assert_awaited_once_with("foundry-bucket")
        collaborators.network_storage.purge_and_delete.assert_awaited_once_with("fsap-1", "u1")
        collaborators.secrets.put.assert_not_awaited()
        with pytest.raises(NotFoundError):
            await container.lifecycle.status("u1")

    async def test_admin_key_survives_recreate(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        collaborators.secrets.get.return_value = LicenseCredentials("old", "old", admin_key="kept-key")

        await container.lifecycle.create("u1", byol_profile())

        assert collaborators.secrets.put.await_args.args[1].admin_key == "kept-key"


class TestStartStop:
    """On-demand start and stop."""

    async def test_start_runs_task_and_routes(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())

        result = await container.lifecycle.start("u1")

        assert result.status == InstanceStatus.RUNNING
        assert result.auto_shutdown_at == clock.now + 6 * HOUR
        assert result.linked_session_id is None
        collaborators.routing.bind.assert_awaited_once_with("tg-arn", "10.0.0.5")
        collaborators.routing.create_rule.assert_awaited_once_with("alice.example.com", "tg-arn", 100)

    async def test_start_twice_conflicts(self, container: ServiceContainer, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        await container.lifecycle.start("u1")

        with pytest.raises(ConflictError):
            await container.lifecycle.start("u1")

    async def test_pooled_cannot_start_on_demand(self, container: ServiceContainer, pooled_profile) -> None:
        await container.lifecycle.create("u2", pooled_profile())

        with pytest.raises(PolicyViolationError, match="Only BYOL"):
            await container.lifecycle.start("u2")

    async def test_upcoming_session_blocks_on_demand(self, container: ServiceContainer, clock, byol_profile) -> None:
        """A session on the user's own license within 30 minutes blocks on-demand starts."""
        await container.lifecycle.create("u1", byol_profile())
        await container.scheduler.schedule_session(
            SessionRequest(
                user_id="u1",
                username="alice",
                start_time=clock.now + 600,
                end_time=clock.now + 2 * HOUR,
                license_type=LicenseType.BYOL,
            )
        )

        with pytest.raises(PolicyViolationError):
            await container.lifecycle.start("u1")

    async def test_stop_records_usage_once(self, container: ServiceContainer, collaborators: Collaborators, session_factory, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        await container.lifecycle.start("u1")
        clock.advance(2 * HOUR)

        first = await container.lifecycle.stop("u1")
        second = await container.lifecycle.stop("u1")

        assert first.already_stopped is False
        assert first.hours_recorded == pytest.approx(2.0)
        assert second.already_stopped is True
        collaborators.compute.stop.assert_awaited_once_with("task-arn")
        collaborators.routing.delete_rule.assert_awaited_once_with("rule-arn")
        async with session_factory() as db:
            assert await usage_ledger.get_user_hours(db, "u1", "2026-01") == pytest.approx(2.0)

    async def test_failed_launch_releases_lease(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        """A task that never became ready is torn down and the user can retry."""
        await container.lifecycle.create("u1", byol_profile())
        collaborators.compute.wait_until_running.side_effect = TimeoutError("not running")

        with pytest.raises(UpstreamFailureError):
            await container.lifecycle.start("u1")
        collaborators.compute.stop.assert_awaited_once_with("task-arn")

        collaborators.compute.wait_until_running.side_effect = None
        result = await container.lifecycle.start("u1")
        assert result.status == InstanceStatus.RUNNING

    async def test_status_reconciles_vanished_task(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        await container.lifecycle.start("u1")
        collaborators.compute.status.return_value = TaskStatus.STOPPED
        clock.advance(HOUR)

        view = await container.lifecycle.status("u1")

        assert view.status == InstanceStatus.STOPPED
        assert view.auto_shutdown_at is None
        costs = await container.usage.user_costs("u1")
        assert costs.hours_used == 1.0

    async def test_status_survives_compute_errors(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        await container.lifecycle.start("u1")
        collaborators.compute.status.side_effect = RuntimeError("throttled")

        view = await container.lifecycle.status("u1")

        assert view.status == InstanceStatus.RUNNING


class TestDestroy:
    """Best-effort teardown."""

    async def test_destroy_running_instance(self, container: ServiceContainer, collaborators: Collaborators, session_factory, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile(sharing=True))
        await container.lifecycle.start("u1")

        result = await container.lifecycle.destroy("u1")

        assert result.instance_found is True
        assert result.license_pool_deactivated is True
        assert result.errors == []
        collaborators.compute.stop.assert_awaited_once()
        collaborators.routing.delete_target.assert_awaited_once_with("tg-arn")
        collaborators.dns.delete.assert_awaited_once_with("alice.example.com")
        collaborators.secrets.delete.assert_awaited_once_with("secret-arn")
        async with session_factory() as db:
            assert await state_store.get_instance(db, "u1") is None
            pool = await state_store.get_pool(db, "byol-u1")
        assert pool is not None and pool.is_active is False

    async def test_destroy_continues_past_failures(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        collaborators.object_storage.delete_bucket.side_effect = RuntimeError("bucket busy")

        result = await container.lifecycle.destroy("u1")

        assert result.steps_succeeded == result.steps_total - 1
        assert any("delete_bucket" in e for e in result.errors)
        collaborators.identity.delete_scoped_credential.assert_awaited_once_with("u1")
        with pytest.raises(NotFoundError):
            await container.lifecycle.status("u1")

    async def test_destroy_keep_sharing_keeps_secret_and_pool(self, container: ServiceContainer, collaborators: Collaborators, session_factory, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile(sharing=True))

        result = await container.lifecycle.destroy("u1", keep_license_sharing=True)

        assert result.license_pool_deactivated is False
        collaborators.secrets.delete.assert_not_awaited()
        async with session_factory() as db:
            assert (await state_store.get_pool(db, "byol-u1")).is_active is True

    async def test_destroy_cancels_open_sessions(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        await container.scheduler.schedule_session(
            SessionRequest("u1", "alice", clock.now + 2 * HOUR, clock.now + 3 * HOUR, LicenseType.BYOL)
        )

        result = await container.lifecycle.destroy("u1")

        assert result.sessions_cancelled == 1
        assert result.reservations_cancelled == 1

    async def test_destroy_without_instance(self, container: ServiceContainer) -> None:
        result = await container.lifecycle.destroy("ghost")

        assert result.instance_found is False
        assert result.license_pool_deactivated is False

    async def test_delete_user_removes_leftover_secret(self, container: ServiceContainer, collaborators: Collaborators) -> None:
        collaborators.secrets.get.return_value = LicenseCredentials("u", "p", "k")

        await container.lifecycle.delete_user("ghost")

        collaborators.secrets.delete.assert_awaited_once_with("licensehub/instances/ghost")


class TestSharingAndVersion:
    """License sharing toggles and version changes."""

    async def test_toggle_sharing(self, container: ServiceContainer, session_factory, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())

        enabled = await container.lifecycle.set_license_sharing("u1", True, 2)
        disabled = await container.lifecycle.set_license_sharing("u1", False)

        assert enabled.created is True
        assert enabled.max_concurrent_users == 2
        assert disabled.is_active is False
        async with session_factory() as db:
            assert (await state_store.get_pool(db, "byol-u1")).is_active is False

    async def test_pooled_cannot_toggle_sharing(self, container: ServiceContainer, pooled_profile) -> None:
        await container.lifecycle.create("u2", pooled_profile())

        with pytest.raises(ValidationError):
            await container.lifecycle.set_license_sharing("u2", True)

    async def test_update_version_resets_permissions(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())

        result = await container.lifecycle.update_version("u1", "12")

        assert result.previous_version == "13"
        assert result.permissions_reset is True
        collaborators.network_storage.reset_permissions.assert_awaited_once_with("fsap-1", "u1", "12")

    async def test_update_version_to_explicit_release(self, container: ServiceContainer, collaborators: Collaborators, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())

        result = await container.lifecycle.update_version("u1", "13.346")

        assert result.app_version == "13.346"
        assert result.permissions_reset is False
        collaborators.network_storage.reset_permissions.assert_not_awaited()

    @pytest.mark.parametrize("version", ["14-beta", "", "v13"])
    async def test_invalid_version(self, container: ServiceContainer, byol_profile, version: str) -> None:
        await container.lifecycle.create("u1", byol_profile())

        with pytest.raises(ValidationError):
            await container.lifecycle.update_version("u1", version)

    async def test_running_instance_cannot_change_version(self, container: ServiceContainer, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        await container.lifecycle.start("u1")

        with pytest.raises(ConflictError):
            await container.lifecycle.update_version("u1", "latest")
