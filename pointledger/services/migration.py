"""
Migration Service - bootstrap the ledger from pre-ledger cache balances.

Runs once. Every non-zero cache column becomes one migration entry so that
the ledger-derived balance equals the cache the moment the job finishes.
"""

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pointledger.config import settings
from pointledger.db.errors import translate_db_errors
from pointledger.db.models import utc_now
from pointledger.exceptions import (
    DatabaseUnavailableError,
    MigrationAlreadyRunError,
    PointsError,
)
from pointledger.models.api import PointKind, PointSource
from pointledger.models.domain import MigrationMismatch, MigrationReport
from pointledger.observability.metrics import metrics
from pointledger.observability.tracing import ledger_span
from pointledger.services.balance_cache import BalanceCache, LegacyBalance
from pointledger.services.ledger_store import LedgerStore, add_years

logger = get_logger(__name__)


class MigrationService:
    """One-time conversion of cached balances into ledger entries."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.cache = BalanceCache(session)
        self.ledger = LedgerStore(session)

    async def run(self) -> MigrationReport:
        """
        Write one migration entry per non-zero kind for every cached user.

        Raises:
            MigrationAlreadyRunError: a migration entry already exists; nothing is written
        """
        async with translate_db_errors("point_transactions"):
            existing = await self.ledger.first_with_source(PointSource.MIGRATION)
            if existing is not None:
                raise MigrationAlreadyRunError(existing.id)
            snapshot = await self.cache.list_nonzero()
            await self.session.rollback()

        report = MigrationReport()
        migrated: list[LegacyBalance] = []
        logger.info("point_migration_started", users=len(snapshot))

        for legacy in snapshot:
            try:
                await self._migrate_user(legacy)
            except DatabaseUnavailableError:
                raise
            except (PointsError, SQLAlchemyError) as exc:
                await self.session.rollback()
                report.users_failed += 1
                metrics.migration_users_total.labels(success="False").inc()
                logger.error(
                    "point_migration_user_failed",
                    user_id=legacy.user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue

            report.users_processed += 1
            report.migrated_free += legacy.free
            report.migrated_paid += legacy.paid
            migrated.append(legacy)
            metrics.migration_users_total.labels(success="True").inc()

        report.verification_mismatches = await self._verify(migrated)

        logger.info(
            "point_migration_completed",
            users_processed=report.users_processed,
            users_failed=report.users_failed,
            migrated_free=report.migrated_free,
            migrated_paid=report.migrated_paid,
            mismatches=len(report.verification_mismatches),
        )
        return report

    async def _migrate_user(self, legacy: LegacyBalance) -> None:
        acquired_at = legacy.updated_at or utc_now()
        expires_at = add_years(acquired_at, settings.point_expiry_years)

        with ledger_span("points.migrate_user", user_id=legacy.user_id):
            async with translate_db_errors(f"points:{legacy.user_id}"):
                for kind, amount in ((PointKind.FREE, legacy.free), (PointKind.PAID, legacy.paid)):
                    if amount <= 0:
                        continue
                    await self.ledger.append(
                        user_id=legacy.user_id,
                        kind=kind,
                        amount=amount,
                        source=PointSource.MIGRATION,
                        acquired_at=acquired_at,
                        expires_at=expires_at,
                        description=f"Migrated {kind.value} balance",
                    )
                await self.session.commit()

    async def _verify(self, migrated: list[LegacyBalance]) -> list[MigrationMismatch]:
        """Compare migration entry sums against the snapshot; report, never halt."""
        mismatches: list[MigrationMismatch] = []
        async with translate_db_errors("point_transactions"):
            for legacy in migrated:
                totals = await self.ledger.source_totals(legacy.user_id, PointSource.MIGRATION)
                if totals.free == legacy.free and totals.paid == legacy.paid:
                    continue
                mismatch = MigrationMismatch(
                    user_id=legacy.user_id,
                    expected_free=legacy.free,
                    expected_paid=legacy.paid,
                    actual_free=totals.free,
                    actual_paid=totals.paid,
                )
                mismatches.append(mismatch)
                logger.warning(
                    "point_migration_mismatch",
                    user_id=mismatch.user_id,
                    expected_free=mismatch.expected_free,
                    expected_paid=mismatch.expected_paid,
                    actual_free=mismatch.actual_free,
                    actual_paid=mismatch.actual_paid,
                )
            await self.session.rollback()
        return mismatches
