"""Dispatch commands: one typed variant per action.

Payloads arrive as ``{"action": ..., "userId": ..., ...}`` with camelCase
fields. Each action validates only the fields it uses.
"""

from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from licensehub.core.domain import DEFAULT_VERSION, LicenseType


class Command(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    user_id: str = Field(min_length=1)


class AdminCommand(Command):
    force_reason: str | None = Field(default=None, max_length=500)


# =============================================================================
# Instance lifecycle
# =============================================================================


class CreateCommand(Command):
    action: Literal["create"]
    username: str = Field(min_length=1, max_length=255)
    license_type: LicenseType = LicenseType.BYOL
    license_username: str | None = None
    license_password: str | None = None
    allow_license_sharing: bool = False
    max_concurrent_users: int = Field(default=1, ge=1)
    app_version: str = DEFAULT_VERSION


class StartCommand(Command):
    action: Literal["start"]


class StopCommand(Command):
    action: Literal["stop"]


class DestroyCommand(Command):
    action: Literal["destroy"]
    keep_license_sharing: bool = False


class DeleteUserCommand(Command):
    action: Literal["delete-user"]


class StatusCommand(Command):
    action: Literal["status"]


class ListAllCommand(Command):
    action: Literal["list-all"]


class UpdateVersionCommand(Command):
    action: Literal["update-version"]
    app_version: str = Field(min_length=1, max_length=32)


class SetLicenseSharingCommand(Command):
    action: Literal["set-license-sharing"]
    allow_license_sharing: bool
    max_concurrent_users: int | None = Field(default=None, ge=1)


# =============================================================================
# Scheduling
# =============================================================================


class ScheduleSessionCommand(Command):
    action: Literal["schedule-session"]
    username: str = Field(min_length=1, max_length=255)
    start_time: int
    end_time: int
    license_type: LicenseType
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    preferred_license_id: str | None = None


class CancelSessionCommand(Command):
    action: Literal["cancel-session"]
    session_id: str = Field(min_length=1)


class ListSessionsCommand(Command):
    action: Literal["list-sessions"]
    include_closed: bool = False


class CheckAvailabilityCommand(Command):
    action: Literal["check-availability"]
    license_type: LicenseType
    start_time: int
    end_time: int
    preferred_license_id: str | None = None


class StartScheduledSessionCommand(Command):
    action: Literal["start-scheduled-session"]
    session_id: str = Field(min_length=1)


class EndScheduledSessionCommand(Command):
    action: Literal["end-scheduled-session"]
    session_id: str = Field(min_length=1)


# =============================================================================
# Sweep triggers
# =============================================================================


class AutoShutdownCheckCommand(Command):
    action: Literal["auto-shutdown-check"]


class PrepareSessionsCommand(Command):
    action: Literal["prepare-sessions"]


class ShutdownStatsCommand(Command):
    action: Literal["shutdown-stats"]


# =============================================================================
# Admin
# =============================================================================


class AdminOverviewCommand(AdminCommand):
    action: Literal["admin-overview"]


class AdminForceShutdownCommand(AdminCommand):
    action: Literal["admin-force-shutdown"]
    target_user_id: str = Field(min_length=1)


class AdminCancelSessionCommand(AdminCommand):
    action: Literal["admin-cancel-session"]
    session_id: str = Field(min_length=1)


class AdminCancelAllSessionsCommand(AdminCommand):
    action: Literal["admin-cancel-all-sessions"]


class AdminSystemMaintenanceCommand(AdminCommand):
    action: Literal["admin-system-maintenance"]


class AdminMaintenanceResetCommand(AdminCommand):
    action: Literal["admin-maintenance-reset"]


# =============================================================================
# Usage
# =============================================================================


class GetUserCostsCommand(Command):
    action: Literal["get-user-costs"]


class GetAllCostsCommand(Command):
    action: Literal["get-all-costs"]


class DonationWebhookCommand(Command):
    """Donation notification; arrives from the payment provider, not a user."""

    action: Literal["donation-webhook"]
    user_id: str | None = None
    verification_token: str | None = None
    amount: float
    from_name: str | None = Field(default=None, max_length=255)
    message: str | None = None


AnyCommand = Annotated[
    CreateCommand
    | StartCommand
    | StopCommand
    | DestroyCommand
    | DeleteUserCommand
    | StatusCommand
    | ListAllCommand
    | UpdateVersionCommand
    | SetLicenseSharingCommand
    | ScheduleSessionCommand
    | CancelSessionCommand
    | ListSessionsCommand
    | CheckAvailabilityCommand
    | StartScheduledSessionCommand
    | EndScheduledSessionCommand
    | AutoShutdownCheckCommand
    | PrepareSessionsCommand
    | ShutdownStatsCommand
    | AdminOverviewCommand
    | AdminForceShutdownCommand
    | AdminCancelSessionCommand
    | AdminCancelAllSessionsCommand
    | AdminSystemMaintenanceCommand
    | AdminMaintenanceResetCommand
    | GetUserCostsCommand
    | GetAllCostsCommand
    | DonationWebhookCommand,
    Field(discriminator="action"),
]

command_adapter: TypeAdapter[Any] = TypeAdapter(AnyCommand)

ACTIONS = frozenset(
    get_args(variant.model_fields["action"].annotation)[0]
    for variant in get_args(get_args(AnyCommand)[0])
)

# Actions accepted without a userId
ANONYMOUS_ACTIONS = frozenset({"donation-webhook"})


def parse_command(payload: dict[str, Any]) -> Command:
    """Validate a raw payload into its command variant.

    Raises:
        pydantic.ValidationError: If fields are missing or malformed
    """
    return command_adapter.validate_python(payload)
