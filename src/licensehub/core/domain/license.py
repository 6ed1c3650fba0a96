"""Instance, session and license domain enums."""

import re
from enum import StrEnum


class InstanceStatus(StrEnum):
    """Instance lifecycle status.

    STARTING/STOPPING are read back from the compute layer, never asserted locally.
    """

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class TaskStatus(StrEnum):
    """Compute task status as reported by the launcher."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class LicenseType(StrEnum):
    BYOL = "byol"
    POOLED = "pooled"


class SessionStatus(StrEnum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReservationStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Instance statuses that imply a compute task reference
TASK_BOUND_STATUSES = frozenset({
    InstanceStatus.STARTING,
    InstanceStatus.RUNNING,
    InstanceStatus.STOPPING,
})

OPEN_SESSION_STATUSES = frozenset({SessionStatus.SCHEDULED, SessionStatus.ACTIVE})

# Version channels accepted by update-version besides explicit x.y[.z] versions
VERSION_CHANNELS = frozenset({"13", "12", "11", "release", "latest"})
_VERSION_PATTERN = re.compile(r"^\d+\.\d+(\.\d+)?$")

# Versions whose data layout needs a permission reset when switched to
PERMISSION_RESET_VERSIONS = frozenset({"11", "12"})

DEFAULT_VERSION = "13"

_HOST_UNSAFE = re.compile(r"[^a-z0-9-]")


def license_id_for(owner_id: str) -> str:
    """License ID owned by a BYOL user."""
    return f"byol-{owner_id}"


def owner_of(license_id: str) -> str | None:
    """Owner user ID encoded in a license ID, or None if not a BYOL license."""
    if license_id.startswith("byol-"):
        return license_id[len("byol-"):] or None
    return None


def is_valid_version(version: str) -> bool:
    return version in VERSION_CHANNELS or bool(_VERSION_PATTERN.match(version))


def sanitize_username(username: str) -> str:
    """Lowercase hostname-safe form of a username."""
    cleaned = _HOST_UNSAFE.sub("-", username.lower()).strip("-")
    return cleaned[:32] or "user"
