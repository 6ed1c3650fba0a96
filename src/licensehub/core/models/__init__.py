"""Database models for licensehub.

Models are defined using SQLModel (SQLAlchemy + Pydantic).
"""

from licensehub.core.models.base import generate_ulid
from licensehub.core.models.instance import Instance, LicensePool
from licensehub.core.models.session import LicenseReservation, ScheduledSession
from licensehub.core.models.usage import Donation, UsageInterval

__all__ = [
    "Instance",
    "LicensePool",
    "ScheduledSession",
    "LicenseReservation",
    "UsageInterval",
    "Donation",
    "generate_ulid",
]
