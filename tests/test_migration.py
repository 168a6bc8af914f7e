"""
Tests for MigrationService.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from pointledger.db.models import PointTransaction
from pointledger.exceptions import DataIntegrityError, MigrationAlreadyRunError
from pointledger.models.api import PointKind, PointSource
from pointledger.models.domain import ActiveTotals
from pointledger.services.ledger_store import LedgerStore
from pointledger.services.migration import MigrationService
from pointledger.services.reconciliation import ReconciliationService


async def _entry_count(session) -> int:
    result = await session.execute(select(func.count(PointTransaction.id)))
    return int(result.scalar_one())


class TestMigration:
    """Tests for MigrationService.run."""

    async def test_preserves_totals(self, db_session, seed):
        await seed.balance(1, free=30, paid=70)
        await seed.balance(2, free=5)
        await seed.balance(3)

        report = await MigrationService(db_session).run()

        assert report.users_processed == 2
        assert report.users_failed == 0
        assert (report.migrated_free, report.migrated_paid) == (35, 70)
        assert report.verification_mismatches == []

        store = LedgerStore(db_session)
        totals = await store.active_totals(1)
        assert (totals.free, totals.paid) == (30, 70)
        assert await _entry_count(db_session) == 3

    async def test_entries_use_cache_timestamp(self, db_session, seed):
        updated = datetime(2026, 9, 1, 12, 0, tzinfo=UTC)
        await seed.balance(1, paid=10, updated_at=updated)

        await MigrationService(db_session).run()

        entry = await LedgerStore(db_session).first_with_source(PointSource.MIGRATION)
        assert entry is not None
        assert entry.kind == PointKind.PAID
        assert entry.acquired_at.replace(tzinfo=UTC) == updated
        assert entry.expires_at.replace(tzinfo=UTC) == updated.replace(year=2027)

    async def test_second_run_raises_and_writes_nothing(self, db_session, seed):
        await seed.balance(1, free=30)
        service = MigrationService(db_session)
        await service.run()
        before = await _entry_count(db_session)

        with pytest.raises(MigrationAlreadyRunError) as exc_info:
            await service.run()

        assert exc_info.value.existing_entry_id > 0
        assert await _entry_count(db_session) == before

    async def test_reconcile_after_migration_is_clean(self, db_session, seed):
        await seed.balance(1, free=30, paid=70, updated_at=datetime.now(UTC) - timedelta(days=3))

        await MigrationService(db_session).run()
        diffs = await ReconciliationService(db_session).reconcile_user(1)

        assert not any(d.corrected for d in diffs)

    async def test_verification_reports_mismatch(self, db_session, seed):
        await seed.balance(1, free=30)

        with patch.object(
            LedgerStore,
            "source_totals",
            AsyncMock(return_value=ActiveTotals(free=29, paid=0)),
        ):
            report = await MigrationService(db_session).run()

        assert report.users_processed == 1
        assert len(report.verification_mismatches) == 1
        mismatch = report.verification_mismatches[0]
        assert (mismatch.expected_free, mismatch.actual_free) == (30, 29)

    async def test_user_failure_does_not_halt(self, db_session, seed):
        await seed.balance(1, free=10)
        await seed.balance(2, free=20)
        service = MigrationService(db_session)
        original = service._migrate_user

        async def failing(legacy):
            if legacy.user_id == 1:
                raise DataIntegrityError("bad row")
            return await original(legacy)

        with patch.object(service, "_migrate_user", side_effect=failing):
            report = await service.run()

        assert report.users_processed == 1
        assert report.users_failed == 1
        assert report.migrated_free == 20

    async def test_no_legacy_balances(self, db_session):
        report = await MigrationService(db_session).run()
        assert report.users_processed == 0
        assert report.verification_mismatches == []
