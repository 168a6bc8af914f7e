"""
API Routes - FastAPI endpoints for user point operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pointledger.api.dependencies import require_service_token
from pointledger.config import settings
from pointledger.db.session import get_read_db, get_write_db
from pointledger.exceptions import (
    AlreadyAttendedError,
    ConcurrentModificationError,
    DatabaseUnavailableError,
    DataIntegrityError,
    InsufficientFundsError,
    WriteVerificationError,
)
from pointledger.models.api import (
    AcquireRequest,
    AcquireResponse,
    ActiveEntryItem,
    AttendanceResponse,
    BalanceDetailsResponse,
    BalanceResponse,
    HealthResponse,
    HistoryItem,
    HistoryKind,
    HistoryResponse,
    SpendRequest,
    SpendResponse,
)
from pointledger.models.domain import (
    AcquireIntent,
    BalanceData,
    HistoryRecord,
    SpendIntent,
)
from pointledger.services.points import PointsService

logger = get_logger(__name__)

router = APIRouter()
points_router = APIRouter(
    prefix="/v1/points",
    tags=["points"],
    dependencies=[Depends(require_service_token)],
)

T = TypeVar("T")


async def run_with_retry(operation: Callable[[], Awaitable[T]], resource: str) -> T:
    """
    Run a mutation, retrying once on a serialization conflict.

    The service has already rolled the session back when the error reaches here.
    """
    try:
        return await operation()
    except ConcurrentModificationError:
        logger.info("retrying_after_conflict", resource=resource)
        return await operation()


STORAGE_ERRORS = (
    ConcurrentModificationError,
    DatabaseUnavailableError,
    WriteVerificationError,
    DataIntegrityError,
)


def storage_http_error(exc: Exception) -> HTTPException:
    """Map storage-level failures shared by every endpoint onto HTTP errors."""
    if isinstance(exc, ConcurrentModificationError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent modification, please retry",
        )
    if isinstance(exc, DatabaseUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database integrity error",
    )


def _balance_response(balance: BalanceData) -> BalanceResponse:
    return BalanceResponse(
        user_id=balance.user_id,
        free=balance.free,
        paid=balance.paid,
        total=balance.total,
    )


def _history_item(record: HistoryRecord) -> HistoryItem:
    return HistoryItem(
        category="earn" if record.category == "earn" else "spend",
        record_id=record.record_id,
        points=record.points,
        description=record.description,
        created_at=record.created_at.isoformat(),
        kind=record.kind,
        source=record.source,
        balance=record.balance,
        acquired_at=record.acquired_at.isoformat() if record.acquired_at else None,
        expires_at=record.expires_at.isoformat() if record.expires_at else None,
        usage_type=record.usage_type,
        related_chat_id=record.related_chat_id,
        related_message_id=record.related_message_id,
        free_used=record.free_used,
        paid_used=record.paid_used,
    )


# =============================================================================
# Mutations
# =============================================================================


@points_router.post("/users/{user_id}", response_model=BalanceResponse)
async def open_account(
    user_id: int,
    db: AsyncSession = Depends(get_write_db),
) -> BalanceResponse:
    """
    Create the user's balance row at signup. Idempotent.

    Write operation - requires primary database.
    """
    service = PointsService(db)
    try:
        balance = await run_with_retry(lambda: service.open_account(user_id), f"points:{user_id}")
    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc
    return _balance_response(balance)


@points_router.post("/users/{user_id}/spend", response_model=SpendResponse)
async def spend_points(
    user_id: int,
    request: SpendRequest,
    db: AsyncSession = Depends(get_write_db),
) -> SpendResponse:
    """
    Consume points for a chargeable action, free points first.

    Write operation - requires primary database.
    Returns 402 when free + paid cannot cover the cost.
    """
    service = PointsService(db)
    intent = SpendIntent(
        user_id=user_id,
        cost=request.cost,
        usage_type=request.usage_type,
        description=request.description,
        related_chat_id=request.related_chat_id,
        related_message_id=request.related_message_id,
    )

    try:
        result = await run_with_retry(lambda: service.spend(intent), f"points:{user_id}")

    except InsufficientFundsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient points. Available: {exc.available}, Required: {exc.required}",
        ) from exc

    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc

    return SpendResponse(
        user_id=result.user_id,
        free_used=result.free_used,
        paid_used=result.paid_used,
        free_after=result.free_after,
        paid_after=result.paid_after,
        usage_id=result.usage_id,
    )


@points_router.post(
    "/users/{user_id}/acquire",
    response_model=AcquireResponse,
    status_code=status.HTTP_201_CREATED,
)
async def acquire_points(
    user_id: int,
    request: AcquireRequest,
    db: AsyncSession = Depends(get_write_db),
) -> AcquireResponse:
    """
    Grant a batch of points (purchase, referral, admin grant).

    Write operation - requires primary database.
    """
    service = PointsService(db)
    intent = AcquireIntent(
        user_id=user_id,
        kind=request.kind,
        amount=request.amount,
        source=request.source,
        expires_at=request.expires_at,
        description=request.description,
        payment_reference=request.payment_reference,
    )

    try:
        entry = await run_with_retry(lambda: service.acquire(intent), f"points:{user_id}")
    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc

    return AcquireResponse(
        entry_id=entry.entry_id,
        user_id=entry.user_id,
        kind=entry.kind,
        amount=entry.amount,
        source=entry.source,
        acquired_at=entry.acquired_at.isoformat(),
        expires_at=entry.expires_at.isoformat(),
    )


@points_router.post(
    "/users/{user_id}/attendance",
    response_model=AttendanceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def attend(
    user_id: int,
    db: AsyncSession = Depends(get_write_db),
) -> AttendanceResponse:
    """
    Claim the daily attendance bonus (once per UTC day).

    Returns 409 when today's bonus was already granted.
    """
    service = PointsService(db)
    try:
        entry, balance = await run_with_retry(lambda: service.attend(user_id), f"points:{user_id}")

    except AlreadyAttendedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Already attended today at {exc.attended_at.isoformat()}",
        ) from exc

    except STORAGE_ERRORS as exc:
        raise storage_http_error(exc) from exc

    return AttendanceResponse(
        entry_id=entry.entry_id,
        user_id=user_id,
        points_granted=entry.amount,
        free_points=balance.free,
        paid_points=balance.paid,
    )


# =============================================================================
# Reads
# =============================================================================


@points_router.get("/users/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: int,
    db: AsyncSession = Depends(get_read_db),
) -> BalanceResponse:
    """
    Cached balance for a user. A user without a row reads as zero.

    Read operation - can use replica.
    """
    try:
        balance = await PointsService(db).get_balance(user_id)
    except DatabaseUnavailableError as exc:
        raise storage_http_error(exc) from exc
    return _balance_response(balance)


@points_router.get("/users/{user_id}/balance/details", response_model=BalanceDetailsResponse)
async def get_balance_details(
    user_id: int,
    db: AsyncSession = Depends(get_read_db),
) -> BalanceDetailsResponse:
    """Ledger-derived balance with each active entry and its expiry."""
    try:
        details = await PointsService(db).get_balance_details(user_id)
    except DatabaseUnavailableError as exc:
        raise storage_http_error(exc) from exc

    return BalanceDetailsResponse(
        user_id=details.user_id,
        total_free=details.total_free,
        total_paid=details.total_paid,
        total=details.total,
        entries=[
            ActiveEntryItem(
                entry_id=e.entry_id,
                kind=e.kind,
                balance=e.balance,
                expires_at=e.expires_at.isoformat(),
                source=e.source,
            )
            for e in details.entries
        ],
    )


@points_router.get("/users/{user_id}/history", response_model=HistoryResponse)
async def get_history(
    user_id: int,
    kind: HistoryKind = Query(HistoryKind.ALL),
    limit: int = Query(20, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
) -> HistoryResponse:
    """
    Newest-first earn and spend history with exact merged pagination.

    Read operation - can use replica.
    """
    limit = min(limit, settings.history_max_limit)
    try:
        page = await PointsService(db).get_history(user_id, kind=kind, limit=limit, offset=offset)
    except DatabaseUnavailableError as exc:
        raise storage_http_error(exc) from exc

    return HistoryResponse(
        items=[_history_item(r) for r in page.records],
        total_count=page.total_count,
        has_more=page.has_more,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=HealthResponse(
                status="unhealthy",
                database="disconnected",
                timestamp=datetime.now(UTC).isoformat(),
            ).model_dump(),
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
