"""
Points Service - spend, acquire and read paths for user point balances.

NO DICTIONARIES - All inputs and outputs are strongly typed domain models.

Every mutation runs in one transaction on the injected session and locks the
user's balance row first. On any failure the transaction is rolled back and
the exception propagates.
"""

import heapq
import time
from collections.abc import Iterable
from datetime import datetime
from itertools import islice

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pointledger.config import settings
from pointledger.db.errors import translate_db_errors
from pointledger.db.models import (
    PointTransaction,
    PointUsageHistory,
    ensure_utc,
    utc_now,
)
from pointledger.exceptions import AlreadyAttendedError, InsufficientFundsError, PointsError
from pointledger.models.api import HistoryKind, PointKind, PointSource, UsageType
from pointledger.models.domain import (
    AcquireIntent,
    BalanceData,
    BalanceDetails,
    HistoryPage,
    HistoryRecord,
    LedgerEntryData,
    SpendIntent,
    SpendResult,
)
from pointledger.observability.metrics import metrics
from pointledger.observability.tracing import ledger_span
from pointledger.services.balance_cache import BalanceCache
from pointledger.services.ledger_store import LedgerStore, add_years, entry_to_domain
from pointledger.services.spend_journal import SpendJournal

logger = get_logger(__name__)


def _earn_record(entry: PointTransaction) -> HistoryRecord:
    return HistoryRecord(
        category="earn",
        record_id=entry.id,
        points=entry.amount,
        description=entry.description,
        created_at=ensure_utc(entry.created_at),
        kind=PointKind(entry.kind),
        source=PointSource(entry.source),
        balance=entry.balance,
        acquired_at=ensure_utc(entry.acquired_at),
        expires_at=ensure_utc(entry.expires_at),
    )


def _spend_record(record: PointUsageHistory) -> HistoryRecord:
    details = record.transaction_details or {}
    return HistoryRecord(
        category="spend",
        record_id=record.id,
        points=record.points_used,
        description=record.description,
        created_at=ensure_utc(record.created_at),
        usage_type=UsageType(record.usage_type),
        related_chat_id=record.related_chat_id,
        related_message_id=record.related_message_id,
        free_used=int(details.get("free_used", 0)),
        paid_used=int(details.get("paid_used", 0)),
    )


def _history_key(record: HistoryRecord) -> tuple[datetime, int, int]:
    # Ties on created_at put earn before spend, then newer ids first
    return (record.created_at, 1 if record.category == "earn" else 0, record.record_id)


def merge_history(
    earn: Iterable[HistoryRecord],
    spend: Iterable[HistoryRecord],
    offset: int,
    limit: int,
) -> list[HistoryRecord]:
    """Merge two newest-first streams and slice one page out of the result."""
    merged = heapq.merge(earn, spend, key=_history_key, reverse=True)
    return list(islice(merged, offset, offset + limit))


class PointsService:
    """Point balance operations on a single database session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.cache = BalanceCache(session)
        self.ledger = LedgerStore(session)
        self.journal = SpendJournal(session)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def open_account(self, user_id: int) -> BalanceData:
        """Create the user's zero balance row if it does not exist yet."""
        async with translate_db_errors(f"points:{user_id}"):
            try:
                row = await self.cache.lock_or_create(user_id)
                balance = self.cache.to_domain(row)
                await self.session.commit()
            except (PointsError, SQLAlchemyError):
                await self.session.rollback()
                raise
        return balance

    async def spend(self, intent: SpendIntent) -> SpendResult:
        """
        Consume points for a chargeable action, free points first.

        This operation requires:
        1. Row-level locking of the balance row (SELECT FOR UPDATE)
        2. Balance verification against the cost
        3. Atomic cache update plus journal append

        Raises:
            InsufficientFundsError: free + paid < cost; nothing is written
            ConcurrentModificationError: database aborted on a serialization conflict
            DatabaseUnavailableError: database unreachable
        """
        start = time.perf_counter()
        usage_type = intent.usage_type.value

        if intent.cost == 0:
            balance = await self.cache.read(intent.user_id)
            return SpendResult(
                user_id=intent.user_id,
                free_used=0,
                paid_used=0,
                free_after=balance.free,
                paid_after=balance.paid,
                usage_id=None,
            )

        try:
            with ledger_span("points.spend", user_id=intent.user_id, cost=intent.cost) as span:
                async with translate_db_errors(f"points:{intent.user_id}"):
                    split = await self.cache.debit(intent.user_id, intent.cost)
                    record = await self.journal.append(intent, split)
                    await self.session.commit()
                span.set_attribute("points.free_used", split.free_used)
                span.set_attribute("points.paid_used", split.paid_used)
        except InsufficientFundsError as exc:
            await self.session.rollback()
            metrics.record_spend(
                usage_type, False, intent.cost, time.perf_counter() - start, "insufficient_funds"
            )
            logger.info(
                "spend_insufficient_funds",
                user_id=intent.user_id,
                available=exc.available,
                required=exc.required,
            )
            raise
        except PointsError as exc:
            await self.session.rollback()
            error_type = type(exc).__name__
            metrics.record_spend(
                usage_type, False, intent.cost, time.perf_counter() - start, error_type
            )
            metrics.record_error(error_type, "spend")
            logger.warning("spend_failed", user_id=intent.user_id, error_type=error_type)
            raise

        metrics.record_spend(usage_type, True, intent.cost, time.perf_counter() - start)
        logger.info(
            "points_spent",
            user_id=intent.user_id,
            cost=intent.cost,
            usage_type=usage_type,
            free_used=split.free_used,
            paid_used=split.paid_used,
            usage_id=record.id,
        )

        return SpendResult(
            user_id=intent.user_id,
            free_used=split.free_used,
            paid_used=split.paid_used,
            free_after=split.free_after,
            paid_after=split.paid_after,
            usage_id=record.id,
        )

    async def acquire(self, intent: AcquireIntent) -> LedgerEntryData:
        """
        Grant a batch of points: one ledger entry plus a cache credit.

        expires_at defaults to one calendar year after acquisition.

        Raises:
            ValueError: expires_at is not in the future
        """
        acquired_at = utc_now()
        expires_at = intent.expires_at or add_years(acquired_at, settings.point_expiry_years)
        if expires_at <= acquired_at:
            raise ValueError(f"expires_at must be after acquisition: {expires_at.isoformat()}")
        source = intent.source.value
        kind = intent.kind.value

        try:
            with ledger_span("points.acquire", user_id=intent.user_id, kind=kind, source=source):
                async with translate_db_errors(f"points:{intent.user_id}"):
                    row = await self.cache.lock_or_create(intent.user_id)
                    entry = await self.ledger.append(
                        user_id=intent.user_id,
                        kind=intent.kind,
                        amount=intent.amount,
                        source=intent.source,
                        acquired_at=acquired_at,
                        expires_at=expires_at,
                        description=intent.description,
                        payment_reference=intent.payment_reference,
                    )
                    await self.cache.credit(row, intent.kind, intent.amount)
                    entry_data = entry_to_domain(entry)
                    await self.session.commit()
        except PointsError as exc:
            await self.session.rollback()
            metrics.record_acquisition(source, kind, False, intent.amount)
            metrics.record_error(type(exc).__name__, "acquire")
            raise

        metrics.record_acquisition(source, kind, True, intent.amount)
        logger.info(
            "points_acquired",
            user_id=intent.user_id,
            entry_id=entry_data.entry_id,
            kind=kind,
            amount=intent.amount,
            source=source,
            expires_at=entry_data.expires_at.isoformat(),
        )
        return entry_data

    async def attend(self, user_id: int) -> tuple[LedgerEntryData, BalanceData]:
        """
        Grant the daily attendance bonus once per UTC calendar day.

        Raises:
            AlreadyAttendedError: bonus already granted today
        """
        now = utc_now()
        amount = settings.daily_attendance_points

        try:
            async with translate_db_errors(f"points:{user_id}"):
                row = await self.cache.lock_or_create(user_id)
                if row.last_attended_at is not None:
                    last = ensure_utc(row.last_attended_at)
                    if last.date() == now.date():
                        raise AlreadyAttendedError(user_id, last)

                entry = await self.ledger.append(
                    user_id=user_id,
                    kind=PointKind.FREE,
                    amount=amount,
                    source=PointSource.DAILY_ATTENDANCE,
                    acquired_at=now,
                    expires_at=add_years(now, settings.point_expiry_years),
                    description="Daily attendance bonus",
                )
                row.last_attended_at = now
                await self.cache.credit(row, PointKind.FREE, amount)
                entry_data = entry_to_domain(entry)
                balance = self.cache.to_domain(row)
                await self.session.commit()
        except PointsError:
            await self.session.rollback()
            raise

        metrics.record_acquisition(PointSource.DAILY_ATTENDANCE.value, "free", True, amount)
        logger.info("attendance_granted", user_id=user_id, entry_id=entry_data.entry_id)
        return entry_data, balance

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_balance(self, user_id: int) -> BalanceData:
        """Cached balance; the authoritative value for spend decisions."""
        async with translate_db_errors(f"points:{user_id}"):
            return await self.cache.read(user_id)

    async def get_balance_details(self, user_id: int) -> BalanceDetails:
        """Ledger-derived balance with the active entries behind it."""
        async with translate_db_errors(f"points:{user_id}"):
            entries, _ = await self.ledger.list_valid_active(user_id)
        items = [entry_to_domain(e) for e in entries]
        return BalanceDetails(
            user_id=user_id,
            total_free=sum(e.balance for e in items if e.kind == PointKind.FREE),
            total_paid=sum(e.balance for e in items if e.kind == PointKind.PAID),
            entries=items,
        )

    async def get_history(
        self,
        user_id: int,
        kind: HistoryKind = HistoryKind.ALL,
        limit: int = 20,
        offset: int = 0,
    ) -> HistoryPage:
        """
        Newest-first page of earn and/or spend records.

        Each source is read up to offset + limit rows, merged by created_at
        and sliced, so pagination is exact across both tables.
        """
        if limit < 1:
            raise ValueError(f"limit must be positive: {limit}")
        if offset < 0:
            raise ValueError(f"offset cannot be negative: {offset}")

        window = offset + limit
        earn: list[HistoryRecord] = []
        spend: list[HistoryRecord] = []
        total = 0

        async with translate_db_errors(f"points:{user_id}"):
            if kind in (HistoryKind.EARN, HistoryKind.ALL):
                earn = [_earn_record(e) for e in await self.ledger.list_recent(user_id, window)]
                total += await self.ledger.count_for_user(user_id)
            if kind in (HistoryKind.SPEND, HistoryKind.ALL):
                spend = [
                    _spend_record(r) for r in await self.journal.list_recent(user_id, window)
                ]
                total += await self.journal.count_for_user(user_id)

        return HistoryPage(
            records=merge_history(earn, spend, offset, limit),
            total_count=total,
            has_more=window < total,
        )
