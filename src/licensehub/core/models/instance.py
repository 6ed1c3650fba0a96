"""Instance and license pool models.

All timestamps are unix seconds (UTC).
"""

from sqlalchemy import BigInteger, Column, Index, String
from sqlmodel import Field, SQLModel

from licensehub.core.domain import DEFAULT_VERSION, InstanceStatus, LicenseType


class Instance(SQLModel, table=True):
    """A user's hosted instance (at most one per user)."""

    __tablename__ = "instances"

    user_id: str = Field(primary_key=True)
    username: str = Field(max_length=255)
    sanitized_username: str = Field(max_length=64)

    status: InstanceStatus = Field(default=InstanceStatus.CREATED, sa_type=String)
    app_version: str = Field(default=DEFAULT_VERSION, max_length=32)

    # License binding
    license_type: LicenseType = Field(default=LicenseType.BYOL, sa_type=String)
    allow_license_sharing: bool = Field(default=False)
    max_concurrent_users: int = Field(default=1)
    license_owner_id: str | None = None  # license backing a pooled instance

    # Provisioned resources (live for the instance's lifetime)
    access_point_id: str | None = None
    bucket_name: str | None = None
    bucket_access_key_id: str | None = None
    bucket_secret_access_key: str | None = None
    secret_ref: str | None = None
    target_ref: str | None = None

    # Runtime binding (set iff a task exists)
    template_ref: str | None = None
    task_ref: str | None = None
    task_address: str | None = None
    rule_ref: str | None = None

    # Expiry
    auto_shutdown_at: int | None = Field(default=None, sa_column=Column(BigInteger))
    linked_session_id: str | None = None

    # Start lease (one start in flight per user)
    op_id: str | None = None
    op_started_at: int | None = Field(default=None, sa_column=Column(BigInteger))

    started_at: int | None = Field(default=None, sa_column=Column(BigInteger))
    created_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    updated_at: int = Field(sa_column=Column(BigInteger, nullable=False))

    __table_args__ = (
        # Auto-Shutdown Sweep polling
        Index("idx_instances_status", "status"),
        Index("idx_instances_license_owner", "license_owner_id"),
        # One host per instance
        Index("uq_instances_sanitized_username", "sanitized_username", unique=True),
    )


class LicensePool(SQLModel, table=True):
    """A shared license (one per sharer), deactivated rather than deleted."""

    __tablename__ = "license_pools"

    license_id: str = Field(primary_key=True)  # byol-{owner_id}
    owner_id: str = Field(index=True)
    owner_username: str = Field(max_length=255)
    max_concurrent_users: int = Field(default=1)
    is_active: bool = Field(default=True)

    created_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    updated_at: int = Field(sa_column=Column(BigInteger, nullable=False))

    __table_args__ = (
        Index("idx_license_pools_active", "is_active", "created_at"),
    )
