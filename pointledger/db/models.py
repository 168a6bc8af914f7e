"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pointledger.models.api import PointKind, PointSource, UsageType

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_Identity = BigInteger().with_variant(Integer(), "sqlite")
_JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _enum_column(enum_cls: type, name: str, length: int) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class PointBalance(Base):
    """
    ORM model for points table.

    Denormalized per-user totals consulted on every spend. Rows are locked
    with SELECT FOR UPDATE by every mutation, which serializes work per user.
    """

    __tablename__ = "points"

    id: Mapped[int] = mapped_column(_Identity, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    free_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Daily attendance bookkeeping
    last_attended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("free_points >= 0", name="ck_points_free_non_negative"),
        CheckConstraint("paid_points >= 0", name="ck_points_paid_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PointBalance(user_id={self.user_id}, free={self.free_points}, "
            f"paid={self.paid_points})>"
        )


class PointTransaction(Base):
    """
    ORM model for point_transactions table.

    Acquisition ledger. One row per earned batch, each with its own expiry.
    amount, acquired_at and expires_at never change after insert; balance is
    rewritten only by reconciliation, the expiry sweep and the migration job.
    """

    __tablename__ = "point_transactions"

    id: Mapped[int] = mapped_column(_Identity, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    kind: Mapped[PointKind] = mapped_column(
        _enum_column(PointKind, "point_kind", 10), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False)

    source: Mapped[PointSource] = mapped_column(
        _enum_column(PointSource, "point_source", 30), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # External payment reference for purchases
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Written by reconciliation; excluded from balance sums
    is_correction: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        # balance range is checked on read: legacy rows predate the ledger rules
        CheckConstraint("amount > 0", name="ck_point_transactions_amount_positive"),
        Index("idx_point_transactions_user_active", "user_id", "kind", "expires_at"),
        Index("idx_point_transactions_source", "source"),
        Index("idx_point_transactions_user_created", "user_id", "created_at"),
        Index(
            "idx_point_transactions_expiring",
            "expires_at",
            postgresql_where=(balance > 0),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PointTransaction(id={self.id}, user_id={self.user_id}, kind={self.kind}, "
            f"amount={self.amount}, balance={self.balance}, source={self.source})>"
        )


class PointUsageHistory(Base):
    """
    ORM model for point_usage_history table.

    Append-only spend journal.
    """

    __tablename__ = "point_usage_history"

    id: Mapped[int] = mapped_column(_Identity, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    points_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    usage_type: Mapped[UsageType] = mapped_column(
        _enum_column(UsageType, "usage_type", 30), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    related_chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    related_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # {"free_used": int, "paid_used": int}
    transaction_details: Mapped[dict[str, Any]] = mapped_column(_JSONDocument, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("points_used > 0", name="ck_point_usage_points_positive"),
        Index("idx_point_usage_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PointUsageHistory(id={self.id}, user_id={self.user_id}, "
            f"points_used={self.points_used}, usage_type={self.usage_type})>"
        )
