"""Scheduled session and license reservation models."""

from sqlalchemy import BigInteger, Column, Index, String, Text
from sqlmodel import Field, SQLModel

from licensehub.core.domain import LicenseType, ReservationStatus, SessionStatus


class ScheduledSession(SQLModel, table=True):
    """A booking of a license for a time window.

    start_time/end_time are fixed at creation; the state store offers no
    path to change them once the paired reservation exists.
    """

    __tablename__ = "scheduled_sessions"

    session_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    username: str = Field(max_length=255)

    start_time: int = Field(sa_column=Column(BigInteger, nullable=False))
    end_time: int = Field(sa_column=Column(BigInteger, nullable=False))

    license_type: LicenseType = Field(sa_type=String)
    license_id: str | None = None  # resolved license; may be rebound at prep time
    title: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, sa_column=Column(Text))

    status: SessionStatus = Field(default=SessionStatus.SCHEDULED, sa_type=String)
    instance_id: str | None = None

    # Preparation retry state
    prep_attempts: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))

    created_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    updated_at: int = Field(sa_column=Column(BigInteger, nullable=False))

    __table_args__ = (
        # Session Preparation Sweep polling
        Index("idx_sessions_status_start", "status", "start_time"),
        Index("idx_sessions_license", "license_id", "status"),
    )


class LicenseReservation(SQLModel, table=True):
    """Admission-control ledger entry for one session's window on one license."""

    __tablename__ = "license_reservations"

    reservation_id: str = Field(primary_key=True)
    license_id: str
    session_id: str = Field(index=True)
    user_id: str = Field(index=True)

    start_time: int = Field(sa_column=Column(BigInteger, nullable=False))
    end_time: int = Field(sa_column=Column(BigInteger, nullable=False))
    status: ReservationStatus = Field(default=ReservationStatus.ACTIVE, sa_type=String)

    created_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    updated_at: int = Field(sa_column=Column(BigInteger, nullable=False))

    __table_args__ = (
        # Overlap query: active reservations on a license
        Index("idx_reservations_license_window", "license_id", "status", "start_time"),
    )
