"""Usage ledger models."""

from sqlalchemy import BigInteger, Column, Index
from sqlmodel import Field, SQLModel

from licensehub.core.models.base import generate_ulid


class UsageInterval(SQLModel, table=True):
    """One run interval of a user's compute task.

    ``period`` is the billing month (YYYY-MM) of the stop time; open
    intervals (stop_ts is None) carry the start month until closed.
    """

    __tablename__ = "usage_intervals"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    user_id: str
    period: str = Field(max_length=7)
    start_ts: int = Field(sa_column=Column(BigInteger, nullable=False))
    stop_ts: int | None = Field(default=None, sa_column=Column(BigInteger))
    hours: float = Field(default=0.0)

    __table_args__ = (
        Index("idx_usage_user_period", "user_id", "period"),
        Index("idx_usage_open", "user_id", "start_ts"),
    )


class Donation(SQLModel, table=True):
    """A donation credited against a user's running cost (user may be unknown)."""

    __tablename__ = "donations"

    id: str = Field(default_factory=generate_ulid, primary_key=True)
    user_id: str | None = Field(default=None, index=True)
    period: str = Field(max_length=7)
    amount: float
    donor_name: str | None = Field(default=None, max_length=255)
    message: str | None = None
    received_at: int = Field(sa_column=Column(BigInteger, nullable=False))
