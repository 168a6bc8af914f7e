"""
Ledger Store - append-mostly acquisition ledger (point_transactions).

Spend sites only ever append. Balance rewrites are limited to the
reconciliation, expiry and migration services.
"""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pointledger.db.models import PointTransaction, ensure_utc, utc_now
from pointledger.exceptions import LedgerIntegrityViolation, WriteVerificationError
from pointledger.models.api import PointKind, PointSource
from pointledger.models.domain import ActiveTotals, LedgerEntryData
from pointledger.observability.metrics import metrics

logger = get_logger(__name__)


def add_years(moment: datetime, years: int) -> datetime:
    """Shift by calendar years; Feb 29 falls back to Feb 28."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


def check_entry_integrity(entry: PointTransaction) -> None:
    """Raise LedgerIntegrityViolation when balance is outside [0, amount]."""
    if entry.balance < 0 or entry.balance > entry.amount:
        raise LedgerIntegrityViolation(entry.id, entry.balance, entry.amount)


def entry_to_domain(entry: PointTransaction) -> LedgerEntryData:
    """Convert ORM ledger entry to domain model."""
    return LedgerEntryData(
        entry_id=entry.id,
        user_id=entry.user_id,
        kind=PointKind(entry.kind),
        amount=entry.amount,
        balance=entry.balance,
        source=PointSource(entry.source),
        description=entry.description,
        acquired_at=ensure_utc(entry.acquired_at),
        expires_at=ensure_utc(entry.expires_at),
        created_at=ensure_utc(entry.created_at),
    )


class LedgerStore:
    """Data access for point_transactions, bound to one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        user_id: int,
        kind: PointKind,
        amount: int,
        source: PointSource,
        acquired_at: datetime,
        expires_at: datetime,
        balance: int | None = None,
        description: str | None = None,
        payment_reference: str | None = None,
        is_correction: bool = False,
    ) -> PointTransaction:
        """
        Insert an acquisition entry and return it with its id populated.

        balance defaults to amount (a fresh, unconsumed batch).
        """
        entry = PointTransaction(
            user_id=user_id,
            kind=kind,
            amount=amount,
            balance=amount if balance is None else balance,
            source=source,
            description=description,
            payment_reference=payment_reference,
            is_correction=is_correction,
            acquired_at=acquired_at,
            expires_at=expires_at,
            created_at=utc_now(),
        )
        self.session.add(entry)
        await self.session.flush()

        # Verify entry was written
        verified = await self.session.get(PointTransaction, entry.id)
        if verified is None:
            raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")
        return verified

    async def list_active(
        self,
        user_id: int,
        kind: PointKind | None = None,
        now: datetime | None = None,
    ) -> list[PointTransaction]:
        """
        Entries that still count toward the balance, soonest-to-expire first.

        Reconciliation corrections are audit records and never count.
        """
        now = now or utc_now()
        stmt = select(PointTransaction).where(
            PointTransaction.user_id == user_id,
            PointTransaction.balance > 0,
            PointTransaction.expires_at > now,
            PointTransaction.is_correction.is_(False),
        )
        if kind is not None:
            stmt = stmt.where(PointTransaction.kind == kind)
        stmt = stmt.order_by(
            PointTransaction.expires_at.asc(),
            PointTransaction.acquired_at.asc(),
            PointTransaction.id.asc(),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_valid_active(
        self, user_id: int, now: datetime | None = None
    ) -> tuple[list[PointTransaction], int]:
        """Active entries that pass the integrity check, plus the count that failed it."""
        valid: list[PointTransaction] = []
        violations = 0
        for entry in await self.list_active(user_id, now=now):
            try:
                check_entry_integrity(entry)
            except LedgerIntegrityViolation as exc:
                violations += 1
                metrics.ledger_integrity_violations_total.inc()
                logger.error(
                    "ledger_integrity_violation",
                    user_id=user_id,
                    entry_id=exc.entry_id,
                    balance=exc.balance,
                    amount=exc.amount,
                )
                continue
            valid.append(entry)
        return valid, violations

    async def active_totals(self, user_id: int, now: datetime | None = None) -> ActiveTotals:
        """Ledger-derived balance per kind; integrity violators count as 0."""
        entries, violations = await self.list_valid_active(user_id, now=now)
        free = sum(e.balance for e in entries if e.kind == PointKind.FREE)
        paid = sum(e.balance for e in entries if e.kind == PointKind.PAID)
        return ActiveTotals(free=free, paid=paid, violations=violations)

    async def list_recent(self, user_id: int, limit: int) -> list[PointTransaction]:
        """Newest entries first (history)."""
        stmt = (
            select(PointTransaction)
            .where(PointTransaction.user_id == user_id)
            .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_user(self, user_id: int) -> int:
        stmt = select(func.count(PointTransaction.id)).where(PointTransaction.user_id == user_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def first_with_source(self, source: PointSource) -> PointTransaction | None:
        """Oldest entry from a source, if any."""
        stmt = (
            select(PointTransaction)
            .where(PointTransaction.source == source)
            .order_by(PointTransaction.id.asc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def source_totals(self, user_id: int, source: PointSource) -> ActiveTotals:
        """Sum of balance per kind over one source, expired or not."""
        stmt = (
            select(PointTransaction.kind, func.coalesce(func.sum(PointTransaction.balance), 0))
            .where(
                PointTransaction.user_id == user_id,
                PointTransaction.source == source,
            )
            .group_by(PointTransaction.kind)
        )
        result = await self.session.execute(stmt)
        sums = {PointKind(kind): int(total) for kind, total in result.all()}
        return ActiveTotals(free=sums.get(PointKind.FREE, 0), paid=sums.get(PointKind.PAID, 0))

    async def list_expired_ids(self, now: datetime, after_id: int, limit: int) -> list[int]:
        """Ids of expired entries still holding a balance, in id order."""
        stmt = (
            select(PointTransaction.id)
            .where(
                PointTransaction.balance > 0,
                PointTransaction.expires_at <= now,
                PointTransaction.is_correction.is_(False),
                PointTransaction.id > after_id,
            )
            .order_by(PointTransaction.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def owner_of(self, entry_id: int) -> int | None:
        """User id of an entry, read without locking."""
        stmt = select(PointTransaction.user_id).where(PointTransaction.id == entry_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_entry(self, entry_id: int) -> PointTransaction | None:
        """Lock one entry row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(PointTransaction)
            .where(PointTransaction.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
