"""Domain models and enums."""

from licensehub.core.domain.license import (
    DEFAULT_VERSION,
    OPEN_SESSION_STATUSES,
    PERMISSION_RESET_VERSIONS,
    TASK_BOUND_STATUSES,
    VERSION_CHANNELS,
    InstanceStatus,
    LicenseType,
    ReservationStatus,
    SessionStatus,
    TaskStatus,
    is_valid_version,
    license_id_for,
    owner_of,
    sanitize_username,
)

__all__ = [
    "InstanceStatus",
    "LicenseType",
    "ReservationStatus",
    "SessionStatus",
    "TaskStatus",
    "DEFAULT_VERSION",
    "OPEN_SESSION_STATUSES",
    "PERMISSION_RESET_VERSIONS",
    "TASK_BOUND_STATUSES",
    "VERSION_CHANNELS",
    "is_valid_version",
    "license_id_for",
    "owner_of",
    "sanitize_username",
]
