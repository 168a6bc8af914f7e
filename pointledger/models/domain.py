"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime

from pointledger.models.api import PointKind, PointSource, UsageType


@dataclass(frozen=True)
class BalanceData:
    """Immutable balance cache snapshot."""

    user_id: int
    free: int
    paid: int

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.free < 0 or self.paid < 0:
            raise ValueError(f"Balance cannot be negative: free={self.free}, paid={self.paid}")

    @property
    def total(self) -> int:
        return self.free + self.paid


@dataclass(frozen=True)
class DebitSplit:
    """How a cost was split between free and paid points."""

    free_used: int
    paid_used: int
    free_after: int
    paid_after: int


@dataclass(frozen=True)
class SpendIntent:
    """Domain model for a spend before persistence - immutable intent."""

    user_id: int
    cost: int
    usage_type: UsageType
    description: str | None = None
    related_chat_id: int | None = None
    related_message_id: int | None = None

    def __post_init__(self) -> None:
        """Validate spend constraints."""
        if self.cost < 0:
            raise ValueError(f"Spend cost cannot be negative: {self.cost}")


@dataclass(frozen=True)
class SpendResult:
    """Outcome of a committed spend."""

    user_id: int
    free_used: int
    paid_used: int
    free_after: int
    paid_after: int
    usage_id: int | None


@dataclass(frozen=True)
class AcquireIntent:
    """Domain model for an acquisition before persistence - immutable intent."""

    user_id: int
    kind: PointKind
    amount: int
    source: PointSource
    expires_at: datetime | None = None
    description: str | None = None
    payment_reference: str | None = None

    def __post_init__(self) -> None:
        """Validate acquisition constraints."""
        if self.amount <= 0:
            raise ValueError(f"Point amount must be positive: {self.amount}")
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware")


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: int
    user_id: int
    kind: PointKind
    amount: int
    balance: int
    source: PointSource
    description: str | None
    acquired_at: datetime
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class ActiveTotals:
    """Ledger-derived balance for one user."""

    free: int
    paid: int
    violations: int = 0

    def for_kind(self, kind: PointKind) -> int:
        return self.free if kind == PointKind.FREE else self.paid


@dataclass(frozen=True)
class BalanceDetails:
    """Ledger-derived balance with the entries that make it up."""

    user_id: int
    total_free: int
    total_paid: int
    entries: list[LedgerEntryData]

    @property
    def total(self) -> int:
        return self.total_free + self.total_paid


@dataclass(frozen=True)
class HistoryRecord:
    """One merged history row (earn or spend)."""

    category: str
    record_id: int
    points: int
    description: str | None
    created_at: datetime
    kind: PointKind | None = None
    source: PointSource | None = None
    balance: int | None = None
    acquired_at: datetime | None = None
    expires_at: datetime | None = None
    usage_type: UsageType | None = None
    related_chat_id: int | None = None
    related_message_id: int | None = None
    free_used: int | None = None
    paid_used: int | None = None


@dataclass(frozen=True)
class HistoryPage:
    """Paginated slice of merged history."""

    records: list[HistoryRecord]
    total_count: int
    has_more: bool


# ============================================================================
# Maintenance Reports
# ============================================================================


@dataclass(frozen=True)
class ReconcileDiff:
    """Reconciliation outcome for one user and kind."""

    user_id: int
    kind: PointKind
    stored: int
    actual: int
    corrected: bool


@dataclass
class ReconciliationReport:
    """Accumulated reconciliation result across users."""

    users_checked: int = 0
    users_corrected: int = 0
    integrity_violations: int = 0
    failed_user_ids: list[int] = field(default_factory=list)
    diffs: list[ReconcileDiff] = field(default_factory=list)


@dataclass(frozen=True)
class MigrationMismatch:
    """Migrated totals that do not match the legacy cache."""

    user_id: int
    expected_free: int
    expected_paid: int
    actual_free: int
    actual_paid: int


@dataclass
class MigrationReport:
    """Migration bootstrap result."""

    users_processed: int = 0
    users_failed: int = 0
    migrated_free: int = 0
    migrated_paid: int = 0
    verification_mismatches: list[MigrationMismatch] = field(default_factory=list)


@dataclass
class ExpiryReport:
    """Expired-point sweep result."""

    entries_expired: int = 0
    points_expired: int = 0
    entries_failed: int = 0
