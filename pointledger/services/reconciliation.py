"""
Reconciliation Service - heal drift between the balance cache and the ledger.

The ledger is authoritative for what a user should hold. When the cache
disagrees, the cache is overwritten and a correction entry is appended so
the change is auditable. Correction entries never count toward balances,
which keeps a second run over an unchanged ledger a no-op.
"""

from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from pointledger.config import settings
from pointledger.db.errors import translate_db_errors
from pointledger.db.models import ensure_utc, utc_now
from pointledger.exceptions import DatabaseUnavailableError, PointsError
from pointledger.models.api import PointKind, PointSource
from pointledger.models.domain import ExpiryReport, ReconcileDiff, ReconciliationReport
from pointledger.observability.logging import log_context
from pointledger.observability.metrics import metrics
from pointledger.observability.tracing import ledger_span
from pointledger.services.balance_cache import BalanceCache
from pointledger.services.ledger_store import LedgerStore, add_years

logger = get_logger(__name__)


def _record(report: ReconciliationReport, diffs: list[ReconcileDiff], violations: int) -> None:
    # Every examined kind is reported, corrected or not
    report.diffs.extend(diffs)
    report.integrity_violations += violations
    if any(d.corrected for d in diffs):
        report.users_corrected += 1


class ReconciliationService:
    """
    Cache-vs-ledger reconciliation and the expired-point sweep.

    Single-user methods run on the session passed in. When a session factory
    is given, reconcile_all opens a fresh session per user so a broken
    connection state cannot leak from one user into the next.
    """

    def __init__(
        self,
        session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.session = session
        self.session_factory = session_factory
        self.cache = BalanceCache(session)
        self.ledger = LedgerStore(session)

    async def reconcile_user(self, user_id: int) -> list[ReconcileDiff]:
        """
        Compare one user's cache against active ledger entries and correct it.

        Returns one diff per kind. Integrity violators are logged and counted
        as zero.
        """
        diffs, _ = await self._reconcile_one(user_id)
        return diffs

    async def reconcile_user_report(self, user_id: int) -> ReconciliationReport:
        """Single-user reconciliation in the same report shape as reconcile_all."""
        report = ReconciliationReport(users_checked=1)
        diffs, violations = await self._reconcile_one(user_id)
        _record(report, diffs, violations)
        return report

    async def _reconcile_one(self, user_id: int) -> tuple[list[ReconcileDiff], int]:
        with ledger_span("points.reconcile", user_id=user_id), log_context(user_id=user_id):
            try:
                async with translate_db_errors(f"points:{user_id}"):
                    diffs, violations = await self._reconcile_locked(user_id)
                    await self.session.commit()
            except (PointsError, SQLAlchemyError):
                await self.session.rollback()
                raise

            corrected = [d for d in diffs if d.corrected]
            if corrected:
                logger.info(
                    "balance_reconciled",
                    corrections=[(d.kind.value, d.stored, d.actual) for d in corrected],
                )
        return diffs, violations

    async def _reconcile_locked(self, user_id: int) -> tuple[list[ReconcileDiff], int]:
        row = await self.cache.lock(user_id)
        now = utc_now()
        totals = await self.ledger.active_totals(user_id, now=now)

        if row is None:
            if totals.free == 0 and totals.paid == 0:
                unchanged = [
                    ReconcileDiff(user_id, PointKind.FREE, 0, 0, False),
                    ReconcileDiff(user_id, PointKind.PAID, 0, 0, False),
                ]
                return unchanged, totals.violations
            # Nothing written yet, so the insert may roll back on a lost race
            row = await self.cache.lock_or_create(user_id)
            totals = await self.ledger.active_totals(user_id, now=now)

        stored = {PointKind.FREE: row.free_points, PointKind.PAID: row.paid_points}
        diffs: list[ReconcileDiff] = []

        for kind in (PointKind.FREE, PointKind.PAID):
            actual = totals.for_kind(kind)
            delta = actual - stored[kind]
            if delta != 0:
                await self.ledger.append(
                    user_id=user_id,
                    kind=kind,
                    amount=abs(delta),
                    # Downward corrections are audit-only and carry nothing
                    balance=max(delta, 0),
                    source=PointSource.ADMIN_GRANT,
                    acquired_at=now,
                    expires_at=add_years(now, settings.point_expiry_years),
                    description=(
                        f"Balance reconciliation ({kind.value}): "
                        f"{stored[kind]}P -> {actual}P, {delta:+d}P"
                    ),
                    is_correction=True,
                )
                metrics.record_correction(kind.value, delta)
            diffs.append(ReconcileDiff(user_id, kind, stored[kind], actual, delta != 0))

        if any(d.corrected for d in diffs):
            await self.cache.overwrite(row, totals.free, totals.paid)
        return diffs, totals.violations

    async def reconcile_all(self) -> ReconciliationReport:
        """
        Reconcile every user with a cache row, in keyset batches.

        A failing user is rolled back, logged and recorded in the report;
        the run continues. Losing the database aborts the run.
        """
        report = ReconciliationReport()
        after_user_id = 0
        logger.info("reconciliation_started", batch_size=settings.reconcile_batch_size)

        while True:
            async with translate_db_errors("points"):
                user_ids = await self.cache.list_user_ids(
                    after_user_id, settings.reconcile_batch_size
                )
                await self.session.rollback()
            if not user_ids:
                break

            for user_id in user_ids:
                report.users_checked += 1
                try:
                    diffs, violations = await self._reconcile_isolated(user_id)
                except DatabaseUnavailableError:
                    raise
                except (PointsError, SQLAlchemyError) as exc:
                    report.failed_user_ids.append(user_id)
                    metrics.record_error(type(exc).__name__, "reconcile")
                    logger.error(
                        "reconciliation_user_failed",
                        user_id=user_id,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    continue

                _record(report, diffs, violations)

            after_user_id = user_ids[-1]

        logger.info(
            "reconciliation_completed",
            users_checked=report.users_checked,
            users_corrected=report.users_corrected,
            integrity_violations=report.integrity_violations,
            users_failed=len(report.failed_user_ids),
        )
        return report

    async def _reconcile_isolated(self, user_id: int) -> tuple[list[ReconcileDiff], int]:
        if self.session_factory is None:
            return await self._reconcile_one(user_id)

        async with self.session_factory() as session:
            return await ReconciliationService(session)._reconcile_one(user_id)

    # ========================================================================
    # Expired-Point Sweep
    # ========================================================================

    async def expire_points(self, now: datetime | None = None) -> ExpiryReport:
        """
        Zero out expired entries and take their balance out of the cache.

        Each entry is handled in its own transaction under the user's balance
        row lock. The cache column is floored at zero.
        """
        now = now or utc_now()
        report = ExpiryReport()
        after_id = 0

        while True:
            async with translate_db_errors("point_transactions"):
                entry_ids = await self.ledger.list_expired_ids(
                    now, after_id, settings.reconcile_batch_size
                )
                await self.session.rollback()
            if not entry_ids:
                break

            for entry_id in entry_ids:
                try:
                    expired = await self._expire_entry(entry_id, now)
                except DatabaseUnavailableError:
                    raise
                except (PointsError, SQLAlchemyError) as exc:
                    await self.session.rollback()
                    report.entries_failed += 1
                    metrics.record_error(type(exc).__name__, "expire")
                    logger.error(
                        "expire_entry_failed",
                        entry_id=entry_id,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    continue
                if expired:
                    report.entries_expired += 1
                    report.points_expired += expired

            after_id = entry_ids[-1]

        logger.info(
            "expired_points_swept",
            entries_expired=report.entries_expired,
            points_expired=report.points_expired,
            entries_failed=report.entries_failed,
        )
        return report

    async def _expire_entry(self, entry_id: int, now: datetime) -> int:
        """Expire one entry; returns the points removed (0 if already handled)."""
        with ledger_span("points.expire_entry", entry_id=entry_id):
            return await self._expire_entry_locked(entry_id, now)

    async def _expire_entry_locked(self, entry_id: int, now: datetime) -> int:
        async with translate_db_errors(f"point_transactions:{entry_id}"):
            user_id = await self.ledger.owner_of(entry_id)
            if user_id is None:
                return 0

            # Lock order: balance row first, then the entry
            row = await self.cache.lock(user_id)
            entry = await self.ledger.lock_entry(entry_id)
            if entry is None or entry.balance <= 0 or ensure_utc(entry.expires_at) > now:
                await self.session.rollback()
                return 0

            expired = entry.balance
            kind = PointKind(entry.kind)
            entry.balance = 0
            if row is None:
                await self.session.flush()
            elif kind == PointKind.FREE:
                await self.cache.overwrite(row, max(0, row.free_points - expired), row.paid_points)
            else:
                await self.cache.overwrite(row, row.free_points, max(0, row.paid_points - expired))
            await self.session.commit()

        metrics.expired_points_total.labels(kind=kind.value).inc(expired)
        logger.info("points_expired", user_id=user_id, entry_id=entry_id, points=expired)
        return expired
