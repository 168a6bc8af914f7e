"""
Admin Routes - maintenance endpoints for reconciliation, migration and expiry.

Called by the cron runner with the service token.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pointledger.api.dependencies import require_service_token
from pointledger.api.routes import STORAGE_ERRORS, storage_http_error
from pointledger.db.session import get_database, get_write_db
from pointledger.exceptions import MigrationAlreadyRunError
from pointledger.models.api import (
    ExpireResponse,
    MigrationMismatchItem,
    MigrationResponse,
    ReconcileDiffItem,
    ReconcileResponse,
)
from pointledger.models.domain import ReconcileDiff, ReconciliationReport
from pointledger.services.migration import MigrationService
from pointledger.services.reconciliation import ReconciliationService

logger = get_logger(__name__)

router = APIRouter(
    prefix="/v1/points/admin",
    tags=["points-admin"],
    dependencies=[Depends(require_service_token)],
)


def _reconcile_response(report: ReconciliationReport) -> ReconcileResponse:
    return ReconcileResponse(
        users_checked=report.users_checked,
        users_corrected=report.users_corrected,
        integrity_violations=report.integrity_violations,
        failed_user_ids=report.failed_user_ids,
        diffs=[_diff_item(d) for d in report.diffs],
    )


def _diff_item(diff: ReconcileDiff) -> ReconcileDiffItem:
    return ReconcileDiffItem(
        user_id=diff.user_id,
        kind=diff.kind,
        stored=diff.stored,
        actual=diff.actual,
        corrected=diff.corrected,
    )


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_all(
    http_request: Request,
    db: AsyncSession = Depends(get_write_db),
) -> ReconcileResponse:
    """Reconcile every user's cached balance against the ledger."""
    service = ReconciliationService(
        db, session_factory=get_database(http_request).write_session_factory
    )
    try:
        report = await service.reconcile_all()
    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc
    return _reconcile_response(report)


@router.post("/reconcile/{user_id}", response_model=ReconcileResponse)
async def reconcile_user(
    user_id: int,
    db: AsyncSession = Depends(get_write_db),
) -> ReconcileResponse:
    """Reconcile a single user."""
    service = ReconciliationService(db)
    try:
        report = await service.reconcile_user_report(user_id)
    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc
    return _reconcile_response(report)


@router.post("/migration", response_model=MigrationResponse)
async def run_migration(db: AsyncSession = Depends(get_write_db)) -> MigrationResponse:
    """
    One-time bootstrap of ledger entries from cached balances.

    Returns 409 if the migration already ran.
    """
    try:
        report = await MigrationService(db).run()

    except MigrationAlreadyRunError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Point migration already ran",
            headers={"X-Existing-Entry-ID": str(exc.existing_entry_id)},
        ) from exc

    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc

    return MigrationResponse(
        users_processed=report.users_processed,
        users_failed=report.users_failed,
        migrated_free=report.migrated_free,
        migrated_paid=report.migrated_paid,
        verification_mismatches=[
            MigrationMismatchItem(
                user_id=m.user_id,
                expected_free=m.expected_free,
                expected_paid=m.expected_paid,
                actual_free=m.actual_free,
                actual_paid=m.actual_paid,
            )
            for m in report.verification_mismatches
        ],
    )


@router.post("/expire", response_model=ExpireResponse)
async def expire_points(db: AsyncSession = Depends(get_write_db)) -> ExpireResponse:
    """Zero out expired ledger entries and remove their points from the cache."""
    try:
        report = await ReconciliationService(db).expire_points()
    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc

    return ExpireResponse(
        entries_expired=report.entries_expired,
        points_expired=report.points_expired,
        entries_failed=report.entries_failed,
    )
