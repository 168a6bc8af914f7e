"""
Balance Cache - per-user running totals (points table).

Every mutation locks the user's row with SELECT FOR UPDATE, which is what
serializes spends, grants and corrections for a single user.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from pointledger.db.models import PointBalance, ensure_utc
from pointledger.exceptions import (
    DataIntegrityError,
    InsufficientFundsError,
    WriteVerificationError,
)
from pointledger.models.api import PointKind
from pointledger.models.domain import BalanceData, DebitSplit

logger = get_logger(__name__)


def compute_debit(free: int, paid: int, cost: int) -> DebitSplit:
    """
    Split a cost across free then paid points.

    Caller guarantees free + paid >= cost. Both results are floored at zero.
    """
    if cost < 0:
        raise ValueError(f"Spend cost cannot be negative: {cost}")
    free_used = min(free, cost)
    paid_used = cost - free_used
    return DebitSplit(
        free_used=free_used,
        paid_used=paid_used,
        free_after=max(0, free - cost),
        paid_after=max(0, paid - paid_used),
    )


@dataclass(frozen=True)
class LegacyBalance:
    """Cache row snapshot taken before the ledger migration writes anything."""

    user_id: int
    free: int
    paid: int
    updated_at: datetime | None


class BalanceCache:
    """Data access for the points table, bound to one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def read(self, user_id: int) -> BalanceData:
        """Unlocked read; a missing row reads as zero."""
        stmt = select(PointBalance).where(PointBalance.user_id == user_id)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return BalanceData(user_id=user_id, free=0, paid=0)
        return self.to_domain(row)

    async def lock(self, user_id: int) -> PointBalance | None:
        """Lock the user's row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(PointBalance)
            .where(PointBalance.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_or_create(self, user_id: int) -> PointBalance:
        """
        Lock the user's row, inserting a zero row first if there is none.

        Must be the first write of the transaction: a lost insert race rolls
        the transaction back before re-locking the winner's row.
        """
        row = await self.lock(user_id)
        if row is not None:
            return row

        self.session.add(PointBalance(user_id=user_id, free_points=0, paid_points=0))
        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - row created by another request
            await self.session.rollback()
            logger.info("balance_row_created_concurrently", user_id=user_id)

        row = await self.lock(user_id)
        if row is None:
            raise WriteVerificationError(f"Balance row for user {user_id} not found after insert")
        return row

    async def debit(self, user_id: int, cost: int) -> DebitSplit:
        """
        Consume cost from the locked row, free points first.

        Raises:
            InsufficientFundsError: free + paid < cost (nothing is written)
        """
        row = await self.lock(user_id)
        free = row.free_points if row is not None else 0
        paid = row.paid_points if row is not None else 0

        if row is None or free + paid < cost:
            raise InsufficientFundsError(user_id, available=free + paid, required=cost)

        split = compute_debit(free, paid, cost)
        await self.overwrite(row, split.free_after, split.paid_after)
        return split

    async def credit(self, row: PointBalance, kind: PointKind, amount: int) -> None:
        """Add amount to one column of an already-locked row."""
        if kind == PointKind.FREE:
            await self.overwrite(row, row.free_points + amount, row.paid_points)
        else:
            await self.overwrite(row, row.free_points, row.paid_points + amount)

    async def overwrite(self, row: PointBalance, free: int, paid: int) -> None:
        """Set both columns on a locked row and verify the write."""
        row.free_points = free
        row.paid_points = paid
        await self.session.flush()

        # Verify row was updated
        verified = await self.session.get(PointBalance, row.id)
        if verified is None:
            raise WriteVerificationError(f"Balance row {row.id} disappeared after update")
        if verified.free_points != free or verified.paid_points != paid:
            raise DataIntegrityError(
                f"Balance mismatch for user {row.user_id}: expected free={free} paid={paid}, "
                f"got free={verified.free_points} paid={verified.paid_points}"
            )

    async def list_user_ids(self, after_user_id: int, limit: int) -> list[int]:
        """Keyset page of user ids with a cache row."""
        stmt = (
            select(PointBalance.user_id)
            .where(PointBalance.user_id > after_user_id)
            .order_by(PointBalance.user_id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_nonzero(self) -> list[LegacyBalance]:
        """Snapshot of every row holding points."""
        stmt = (
            select(PointBalance)
            .where(or_(PointBalance.free_points > 0, PointBalance.paid_points > 0))
            .order_by(PointBalance.user_id.asc())
        )
        result = await self.session.execute(stmt)
        return [
            LegacyBalance(
                user_id=row.user_id,
                free=row.free_points,
                paid=row.paid_points,
                updated_at=ensure_utc(row.updated_at) if row.updated_at else None,
            )
            for row in result.scalars().all()
        ]

    @staticmethod
    def to_domain(row: PointBalance) -> BalanceData:
        """Convert ORM row to domain model."""
        return BalanceData(user_id=row.user_id, free=row.free_points, paid=row.paid_points)
