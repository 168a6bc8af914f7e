"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class PointKind(str, Enum):
    """Point kind enumeration. Free points are always spent before paid points."""

    FREE = "free"
    PAID = "paid"


class PointSource(str, Enum):
    """Where a ledger entry's points came from."""

    DAILY_ATTENDANCE = "daily_attendance"
    PURCHASE = "purchase"
    REFERRAL = "referral"
    ADMIN_GRANT = "admin_grant"
    MIGRATION = "migration"


class UsageType(str, Enum):
    """What a spend paid for."""

    CHAT = "chat"
    IMAGE_GENERATION = "image_generation"
    BOOST = "boost"
    OTHER = "other"


class HistoryKind(str, Enum):
    """History filter."""

    EARN = "earn"
    SPEND = "spend"
    ALL = "all"


# ============================================================================
# Balance Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/points/users/{user_id}/balance response."""

    user_id: int
    free: int
    paid: int
    total: int


class ActiveEntryItem(BaseModel):
    """One active ledger entry in the balance details."""

    entry_id: int
    kind: PointKind
    balance: int
    expires_at: str
    source: PointSource


class BalanceDetailsResponse(BaseModel):
    """GET /v1/points/users/{user_id}/balance/details response."""

    user_id: int
    total_free: int
    total_paid: int
    total: int
    entries: list[ActiveEntryItem]


# ============================================================================
# Spend Models
# ============================================================================


class SpendRequest(BaseModel):
    """POST /v1/points/users/{user_id}/spend request body."""

    cost: int = Field(..., ge=0)
    usage_type: UsageType
    description: str | None = Field(None, max_length=500)
    related_chat_id: int | None = None
    related_message_id: int | None = None


class SpendResponse(BaseModel):
    """POST /v1/points/users/{user_id}/spend response."""

    user_id: int
    free_used: int
    paid_used: int
    free_after: int
    paid_after: int
    usage_id: int | None = None


# ============================================================================
# Acquisition Models
# ============================================================================


class AcquireRequest(BaseModel):
    """POST /v1/points/users/{user_id}/acquire request body."""

    kind: PointKind
    amount: int = Field(..., gt=0)
    source: PointSource
    expires_at: datetime | None = None
    description: str | None = Field(None, max_length=500)
    payment_reference: str | None = Field(None, max_length=255)

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: PointSource) -> PointSource:
        """Migration entries are only written by the migration job."""
        if v == PointSource.MIGRATION:
            raise ValueError("source 'migration' is reserved for the migration job")
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime | None) -> datetime | None:
        """Explicit expiry must carry a timezone and lie in the future."""
        if v is None:
            return v
        if v.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware")
        if v <= datetime.now(UTC):
            raise ValueError("expires_at must be in the future")
        return v


class AcquireResponse(BaseModel):
    """POST /v1/points/users/{user_id}/acquire response."""

    entry_id: int
    user_id: int
    kind: PointKind
    amount: int
    source: PointSource
    acquired_at: str
    expires_at: str


class AttendanceResponse(BaseModel):
    """POST /v1/points/users/{user_id}/attendance response."""

    entry_id: int
    user_id: int
    points_granted: int
    free_points: int
    paid_points: int


# ============================================================================
# History Models
# ============================================================================


class HistoryItem(BaseModel):
    """One row of merged history - either an acquisition or a spend."""

    category: Literal["earn", "spend"]
    record_id: int
    points: int
    description: str | None = None
    created_at: str

    # Earn-only fields
    kind: PointKind | None = None
    source: PointSource | None = None
    balance: int | None = None
    acquired_at: str | None = None
    expires_at: str | None = None

    # Spend-only fields
    usage_type: UsageType | None = None
    related_chat_id: int | None = None
    related_message_id: int | None = None
    free_used: int | None = None
    paid_used: int | None = None


class HistoryResponse(BaseModel):
    """GET /v1/points/users/{user_id}/history response."""

    items: list[HistoryItem]
    total_count: int
    has_more: bool


# ============================================================================
# Maintenance Models
# ============================================================================


class ReconcileDiffItem(BaseModel):
    """Per-user, per-kind reconciliation outcome."""

    user_id: int
    kind: PointKind
    stored: int
    actual: int
    corrected: bool


class ReconcileResponse(BaseModel):
    """POST /v1/points/admin/reconcile response."""

    users_checked: int
    users_corrected: int
    integrity_violations: int
    failed_user_ids: list[int]
    diffs: list[ReconcileDiffItem]


class MigrationMismatchItem(BaseModel):
    """Post-migration verification mismatch."""

    user_id: int
    expected_free: int
    expected_paid: int
    actual_free: int
    actual_paid: int


class MigrationResponse(BaseModel):
    """POST /v1/points/admin/migration response."""

    users_processed: int
    users_failed: int
    migrated_free: int
    migrated_paid: int
    verification_mismatches: list[MigrationMismatchItem]


class ExpireResponse(BaseModel):
    """POST /v1/points/admin/expire response."""

    entries_expired: int
    points_expired: int
    entries_failed: int


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
