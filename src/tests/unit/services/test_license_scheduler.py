"""Tests for the License Scheduler: admission, preemption, activation."""

import pytest

from licensehub.app.container import ServiceContainer
from licensehub.core.domain import InstanceStatus, LicenseType, SessionStatus
from licensehub.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    UpstreamFailureError,
    ValidationError,
)
from licensehub.core.interfaces import Collaborators, LicenseCredentials
from licensehub.services import state_store
from licensehub.services.license_scheduler import SessionRequest, peak_overlap

HOUR = 3600


def _request(user_id: str, start: int, end: int, license_type=LicenseType.POOLED, **kwargs) -> SessionRequest:
    return SessionRequest(
        user_id=user_id,
        username=user_id,
        start_time=start,
        end_time=end,
        license_type=license_type,
        **kwargs,
    )


def _secrets_by_user(collaborators: Collaborators, by_user: dict[str, LicenseCredentials]) -> None:
    collaborators.secrets.get.side_effect = lambda user_id: by_user.get(user_id)


class TestPeakOverlap:
    """Sweep-line peak concurrency over half-open intervals."""

    @pytest.mark.parametrize(
        "intervals,expected",
        [
            ([], 0),
            ([(0, 10)], 1),
            ([(0, 10), (10, 20)], 1),
            ([(0, 10), (5, 15), (10, 20)], 2),
            ([(0, 30), (5, 15), (10, 20)], 3),
            ([(5, 5), (0, 10)], 1),
        ],
    )
    def test_peak(self, intervals: list[tuple[int, int]], expected: int) -> None:
        assert peak_overlap(intervals) == expected


class TestAvailability:
    """Read-only availability checks."""

    async def test_malformed_window(self, container: ServiceContainer, clock) -> None:
        with pytest.raises(ValidationError):
            await container.scheduler.check_availability(LicenseType.POOLED, clock.now + HOUR, clock.now)

    async def test_byol_cannot_name_another_license(self, container: ServiceContainer, clock) -> None:
        with pytest.raises(ValidationError):
            await container.scheduler.check_availability(
                LicenseType.BYOL, clock.now, clock.now + HOUR,
                preferred_license_id="byol-someone-else", requesting_user_id="u1",
            )

    async def test_no_pools_means_unavailable(self, container: ServiceContainer, clock) -> None:
        availability = await container.scheduler.check_availability(
            LicenseType.POOLED, clock.now, clock.now + HOUR
        )
        assert availability.available is False

    async def test_reports_conflicting_reservations(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("owner", byol_profile(sharing=True))
        await container.scheduler.schedule_session(_request("p1", clock.now + HOUR, clock.now + 3 * HOUR))

        availability = await container.scheduler.check_availability(
            LicenseType.POOLED, clock.now + 2 * HOUR, clock.now + 4 * HOUR
        )

        assert availability.available is False
        assert len(availability.conflicting_reservations) == 1
        assert availability.preemptable == {}

    async def test_sharer_gets_own_pool_first(self, container: ServiceContainer, clock, byol_profile) -> None:
        """A pooled request from a sharer ranks their own license ahead of older pools."""
        await container.lifecycle.create("a", byol_profile("a", sharing=True))
        clock.advance(60)
        await container.lifecycle.create("b", byol_profile("b", sharing=True))
        start, end = clock.now + HOUR, clock.now + 2 * HOUR

        anonymous = await container.scheduler.check_availability(LicenseType.POOLED, start, end)
        own_first = await container.scheduler.check_availability(
            LicenseType.POOLED, start, end, requesting_user_id="b"
        )

        assert anonymous.candidate_licenses == ["byol-a", "byol-b"]
        assert own_first.candidate_licenses == ["byol-b", "byol-a"]
        scheduled = await container.scheduler.schedule_session(_request("b", start, end))
        assert scheduled.license_id == "byol-b"


class TestScheduleSession:
    """Capacity enforcement and on-demand preemption."""

    async def test_capacity_is_enforced(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("owner", byol_profile(sharing=True, max_users=2))
        start, end = clock.now + HOUR, clock.now + 3 * HOUR

        first = await container.scheduler.schedule_session(_request("p1", start, end))
        second = await container.scheduler.schedule_session(_request("p2", start + 600, end))

        assert first.license_id == second.license_id == "byol-owner"
        assert first.status == SessionStatus.SCHEDULED
        with pytest.raises(UnavailableError):
            await container.scheduler.schedule_session(_request("p3", start, start + 1200))

    async def test_back_to_back_sessions_fit(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("owner", byol_profile(sharing=True))
        boundary = clock.now + 2 * HOUR

        await container.scheduler.schedule_session(_request("p1", clock.now + HOUR, boundary))
        result = await container.scheduler.schedule_session(_request("p2", boundary, boundary + HOUR))

        assert result.license_id == "byol-owner"

    async def test_second_pool_absorbs_overflow(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("a", byol_profile("a", sharing=True))
        await container.lifecycle.create("b", byol_profile("b", sharing=True))
        start, end = clock.now + HOUR, clock.now + 2 * HOUR

        first = await container.scheduler.schedule_session(_request("p1", start, end))
        second = await container.scheduler.schedule_session(_request("p2", start, end))

        assert {first.license_id, second.license_id} == {"byol-a", "byol-b"}

    async def test_window_already_over(self, container: ServiceContainer, clock) -> None:
        with pytest.raises(ValidationError):
            await container.scheduler.schedule_session(
                _request("u1", clock.now - 2 * HOUR, clock.now - HOUR, LicenseType.BYOL)
            )

    async def test_preempts_owner_on_demand_instance(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile) -> None:
        """A scheduled reservation outranks the owner's on-demand usage."""
        await container.lifecycle.create("owner", byol_profile(sharing=True))
        await container.lifecycle.start("owner")

        result = await container.scheduler.schedule_session(
            _request("p1", clock.now + HOUR, clock.now + 2 * HOUR)
        )

        assert result.conflicts_resolved == ["owner"]
        collaborators.compute.stop.assert_awaited_once_with("task-arn")
        view = await container.lifecycle.status("owner")
        assert view.status == InstanceStatus.STOPPED

    async def test_window_after_on_demand_deadline_needs_no_preemption(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile) -> None:
        await container.lifecycle.create("owner", byol_profile(sharing=True))
        await container.lifecycle.start("owner")

        result = await container.scheduler.schedule_session(
            _request("p1", clock.now + 7 * HOUR, clock.now + 8 * HOUR)
        )

        assert result.conflicts_resolved == []
        collaborators.compute.stop.assert_not_awaited()

    async def test_reservations_are_never_preempted(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("owner", byol_profile(sharing=True))
        await container.scheduler.schedule_session(_request("p1", clock.now + HOUR, clock.now + 2 * HOUR))
        await container.lifecycle.start("owner")

        with pytest.raises(UnavailableError):
            await container.scheduler.schedule_session(
                _request("p2", clock.now + HOUR, clock.now + 2 * HOUR)
            )


class TestCancelSession:
    """Cancellation rights and effects."""

    async def test_owner_cancels(self, container: ServiceContainer, clock) -> None:
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now + HOUR, clock.now + 2 * HOUR, LicenseType.BYOL)
        )

        result = await container.scheduler.cancel_session(scheduled.session_id, requested_by="u1")

        assert result.status == SessionStatus.CANCELLED
        assert result.reservations_cancelled == 1
        assert result.instance_stopped is False
        with pytest.raises(ConflictError):
            await container.scheduler.cancel_session(scheduled.session_id, requested_by="u1")

    async def test_other_user_is_forbidden(self, container: ServiceContainer, clock) -> None:
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now + HOUR, clock.now + 2 * HOUR, LicenseType.BYOL)
        )

        with pytest.raises(ForbiddenError):
            await container.scheduler.cancel_session(scheduled.session_id, requested_by="u2")
        result = await container.scheduler.cancel_session(
            scheduled.session_id, requested_by="admin-1", is_admin=True
        )
        assert result.status == SessionStatus.CANCELLED

    async def test_unknown_session(self, container: ServiceContainer) -> None:
        with pytest.raises(NotFoundError):
            await container.scheduler.cancel_session("missing", requested_by="u1")

    async def test_cancelling_active_session_stops_instance(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now, clock.now + HOUR, LicenseType.BYOL)
        )
        await container.scheduler.activate_session(scheduled.session_id)

        result = await container.scheduler.cancel_session(scheduled.session_id, requested_by="u1")

        assert result.instance_stopped is True
        collaborators.compute.stop.assert_awaited_once()

    async def test_list_sessions(self, container: ServiceContainer, clock) -> None:
        keep = await container.scheduler.schedule_session(
            _request("u1", clock.now + HOUR, clock.now + 2 * HOUR, LicenseType.BYOL)
        )
        gone = await container.scheduler.schedule_session(
            _request("u1", clock.now + 3 * HOUR, clock.now + 4 * HOUR, LicenseType.BYOL)
        )
        await container.scheduler.cancel_session(gone.session_id, requested_by="u1")

        open_only = await container.scheduler.list_sessions("u1")
        everything = await container.scheduler.list_sessions("u1", include_closed=True)

        assert [s.session_id for s in open_only] == [keep.session_id]
        assert len(everything) == 2


class TestActivation:
    """Promoting sessions and starting their instances."""

    async def test_activate_byol_session(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        end = clock.now + 2 * HOUR
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now + 60, end, LicenseType.BYOL)
        )

        result = await container.scheduler.activate_session(scheduled.session_id)

        assert result.activated is True
        assert result.url == "https://alice.example.com"
        view = await container.lifecycle.status("u1")
        assert view.status == InstanceStatus.RUNNING
        assert view.linked_session_id == scheduled.session_id
        assert view.auto_shutdown_at == end

    async def test_activation_is_claimed_once(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now, clock.now + HOUR, LicenseType.BYOL)
        )

        await container.scheduler.activate_session(scheduled.session_id)
        again = await container.scheduler.activate_session(scheduled.session_id)

        assert again.activated is False
        collaborators.compute.run.assert_awaited_once()

    async def test_manual_start_before_lead_time(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now + 2 * HOUR, clock.now + 3 * HOUR, LicenseType.BYOL)
        )

        with pytest.raises(ConflictError):
            await container.scheduler.activate_session(scheduled.session_id, require_started=True)

    async def test_pooled_session_receives_owner_credentials(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile, pooled_profile, owner_credentials) -> None:
        await container.lifecycle.create("owner", byol_profile(sharing=True))
        await container.lifecycle.create("p1", pooled_profile())
        scheduled = await container.scheduler.schedule_session(_request("p1", clock.now, clock.now + HOUR))
        _secrets_by_user(
            collaborators,
            {"owner": owner_credentials, "p1": LicenseCredentials("", "", "p1-key")},
        )
        collaborators.secrets.put.reset_mock()

        result = await container.scheduler.activate_session(scheduled.session_id)

        assert result.license_id == "byol-owner"
        user_id, handed_off = collaborators.secrets.put.await_args.args
        assert user_id == "p1"
        assert (handed_off.username, handed_off.password) == ("owner-user", "owner-pass")
        assert handed_off.admin_key == "p1-key"
        view = await container.lifecycle.status("p1")
        assert view.license_owner_id == "byol-owner"

    async def test_rebinds_when_pool_was_withdrawn(self, container: ServiceContainer, collaborators: Collaborators, session_factory, clock, byol_profile, pooled_profile, owner_credentials) -> None:
        await container.lifecycle.create("a", byol_profile("a", sharing=True))
        await container.lifecycle.create("b", byol_profile("b", sharing=True))
        await container.lifecycle.create("p1", pooled_profile())
        scheduled = await container.scheduler.schedule_session(
            _request("p1", clock.now, clock.now + HOUR, preferred_license_id="byol-a")
        )
        assert scheduled.license_id == "byol-a"
        await container.lifecycle.set_license_sharing("a", False)
        _secrets_by_user(collaborators, {"b": owner_credentials})

        result = await container.scheduler.activate_session(scheduled.session_id)

        assert result.license_id == "byol-b"
        async with session_factory() as db:
            reservations = await state_store.list_reservations(db, session_id=scheduled.session_id)
        assert {(r.license_id, r.status) for r in reservations} == {
            ("byol-a", "cancelled"),
            ("byol-b", "active"),
        }

    async def test_failed_start_is_recorded_and_retried(self, container: ServiceContainer, collaborators: Collaborators, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now, clock.now + HOUR, LicenseType.BYOL)
        )
        collaborators.compute.run.side_effect = RuntimeError("capacity unavailable")

        with pytest.raises(UpstreamFailureError):
            await container.scheduler.activate_session(scheduled.session_id)

        session = await container.scheduler.get_session(scheduled.session_id)
        assert session.status == SessionStatus.SCHEDULED
        assert session.prep_attempts == 1
        assert "capacity unavailable" in session.last_error

    async def test_gives_up_after_max_attempts(self, container: ServiceContainer, collaborators: Collaborators, settings, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now, clock.now + HOUR, LicenseType.BYOL)
        )
        collaborators.compute.run.side_effect = RuntimeError("capacity unavailable")

        for _ in range(settings.policy.max_prep_attempts):
            with pytest.raises(UpstreamFailureError):
                await container.scheduler.activate_session(scheduled.session_id)

        session = await container.scheduler.get_session(scheduled.session_id)
        assert session.status == SessionStatus.CANCELLED

    async def test_complete_session(self, container: ServiceContainer, clock, byol_profile) -> None:
        await container.lifecycle.create("u1", byol_profile())
        scheduled = await container.scheduler.schedule_session(
            _request("u1", clock.now, clock.now + HOUR, LicenseType.BYOL)
        )
        with pytest.raises(ConflictError):
            await container.scheduler.complete_session(scheduled.session_id)
        await container.scheduler.activate_session(scheduled.session_id)

        result = await container.scheduler.complete_session(scheduled.session_id)

        assert result.completed is True
        assert result.instance_stopped is True
        assert result.reservations_completed == 1
        view = await container.lifecycle.status("u1")
        assert view.status == InstanceStatus.STOPPED
