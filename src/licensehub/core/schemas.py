"""Result models returned by services and serialized by the dispatcher.

Field names are snake_case in Python and camelCase on the wire
(``model_dump(by_alias=True)``).
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from licensehub.core.models import Instance, LicensePool, LicenseReservation, ScheduledSession


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Entity views
# =============================================================================


class InstanceView(CamelModel):
    user_id: str
    username: str
    status: str
    url: str
    app_version: str
    license_type: str
    allow_license_sharing: bool
    max_concurrent_users: int
    license_owner_id: str | None = None
    started_at: int | None = None
    auto_shutdown_at: int | None = None
    linked_session_id: str | None = None
    created_at: int
    updated_at: int

    @classmethod
    def of(cls, instance: Instance, url: str) -> "InstanceView":
        return cls(
            user_id=instance.user_id,
            username=instance.username,
            status=instance.status,
            url=url,
            app_version=instance.app_version,
            license_type=instance.license_type,
            allow_license_sharing=instance.allow_license_sharing,
            max_concurrent_users=instance.max_concurrent_users,
            license_owner_id=instance.license_owner_id,
            started_at=instance.started_at,
            auto_shutdown_at=instance.auto_shutdown_at,
            linked_session_id=instance.linked_session_id,
            created_at=instance.created_at,
            updated_at=instance.updated_at,
        )


class SessionView(CamelModel):
    session_id: str
    user_id: str
    username: str
    start_time: int
    end_time: int
    license_type: str
    license_id: str | None = None
    title: str | None = None
    description: str | None = None
    status: str
    instance_id: str | None = None
    prep_attempts: int = 0
    last_error: str | None = None

    @classmethod
    def of(cls, session: ScheduledSession) -> "SessionView":
        return cls.model_validate(session, from_attributes=True)


class ReservationView(CamelModel):
    reservation_id: str
    license_id: str
    session_id: str
    user_id: str
    start_time: int
    end_time: int
    status: str

    @classmethod
    def of(cls, reservation: LicenseReservation) -> "ReservationView":
        return cls.model_validate(reservation, from_attributes=True)


class PoolView(CamelModel):
    license_id: str
    owner_id: str
    owner_username: str
    max_concurrent_users: int
    is_active: bool
    created_at: int

    @classmethod
    def of(cls, pool: LicensePool) -> "PoolView":
        return cls.model_validate(pool, from_attributes=True)


# =============================================================================
# Lifecycle results
# =============================================================================


class CreateResult(CamelModel):
    user_id: str
    url: str
    status: str
    license_pool_created: bool = False


class StartResult(CamelModel):
    user_id: str
    url: str
    status: str
    auto_shutdown_at: int | None = None
    linked_session_id: str | None = None


class StopResult(CamelModel):
    user_id: str
    status: str
    already_stopped: bool = False
    hours_recorded: float = 0.0


class DestroyResult(CamelModel):
    user_id: str
    instance_found: bool
    license_pool_deactivated: bool = False
    sessions_cancelled: int = 0
    reservations_cancelled: int = 0
    steps_succeeded: int = 0
    steps_total: int = 0
    errors: list[str] = Field(default_factory=list)


class VersionResult(CamelModel):
    user_id: str
    app_version: str
    previous_version: str
    permissions_reset: bool = False


class SharingResult(CamelModel):
    license_id: str
    allow_license_sharing: bool
    is_active: bool
    max_concurrent_users: int
    created: bool = False


# =============================================================================
# Scheduler results
# =============================================================================


class Availability(CamelModel):
    available: bool
    conflicting_reservations: list[str] = Field(default_factory=list)
    conflicting_instances: list[str] = Field(default_factory=list)
    candidate_licenses: list[str] = Field(default_factory=list)
    # license_id -> owner user ID whose on-demand instance is the sole blocker
    preemptable: dict[str, str] = Field(default_factory=dict)


class ScheduleResult(CamelModel):
    session_id: str
    license_id: str
    status: str
    start_time: int
    end_time: int
    conflicts_resolved: list[str] = Field(default_factory=list)


class OnDemandDecision(CamelModel):
    can_start: bool
    reason: str | None = None
    conflicting_session: str | None = None


class CancelResult(CamelModel):
    session_id: str
    status: str
    reservations_cancelled: int = 0
    instance_stopped: bool = False


class ActivationResult(CamelModel):
    session_id: str
    activated: bool
    skipped_reason: str | None = None
    license_id: str | None = None
    url: str | None = None


class CompletionResult(CamelModel):
    session_id: str
    completed: bool
    instance_stopped: bool = False
    reservations_completed: int = 0


# =============================================================================
# Sweep / admin results
# =============================================================================


class PrepReport(CamelModel):
    due: int = 0
    activated: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    expired: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ShutdownReport(CamelModel):
    checked: int = 0
    stopped: list[str] = Field(default_factory=list)
    sessions_completed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ShutdownStats(CamelModel):
    total_running: int
    scheduled_for_shutdown: int
    overdue: int
    next_shutdown_in: int | None = None  # seconds


class BulkResult(CamelModel):
    action: str
    reason: str
    processed: int = 0
    succeeded: int = 0
    errors: list[str] = Field(default_factory=list)
    details: dict[str, int] = Field(default_factory=dict)


class OverviewSummary(CamelModel):
    total_instances: int
    running_instances: int
    byol_instances: int
    pooled_instances: int
    shared_licenses: int
    active_sessions: int
    upcoming_sessions: int
    instances_with_timers: int
    total_hours_this_month: float
    estimated_monthly_cost: float


class Overview(CamelModel):
    summary: OverviewSummary
    auto_shutdown: ShutdownStats
    instances: list[InstanceView] = Field(default_factory=list)
    sessions: list[SessionView] = Field(default_factory=list)
    license_pools: list[PoolView] = Field(default_factory=list)


# =============================================================================
# Usage results
# =============================================================================


class UserCosts(CamelModel):
    user_id: str
    period: str
    hours_used: float
    total_cost: float
    donations_received: float
    last_donor_name: str | None = None
    uncovered_cost: float


class AllCosts(CamelModel):
    period: str
    total_hours: float
    total_costs: float
    total_donations: float
    total_uncovered: float
    users: list[UserCosts] = Field(default_factory=list)


class DonationReceipt(CamelModel):
    donation_id: str
    user_id: str | None = None
    amount: float
    attributed: bool
