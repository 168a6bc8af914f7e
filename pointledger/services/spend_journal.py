"""
Spend Journal - append-only record of every successful spend.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pointledger.db.models import PointUsageHistory, utc_now
from pointledger.exceptions import WriteVerificationError
from pointledger.models.domain import DebitSplit, SpendIntent


class SpendJournal:
    """Data access for point_usage_history."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, intent: SpendIntent, split: DebitSplit) -> PointUsageHistory:
        record = PointUsageHistory(
            user_id=intent.user_id,
            points_used=intent.cost,
            usage_type=intent.usage_type,
            description=intent.description,
            related_chat_id=intent.related_chat_id,
            related_message_id=intent.related_message_id,
            transaction_details={"free_used": split.free_used, "paid_used": split.paid_used},
            created_at=utc_now(),
        )
        self.session.add(record)
        await self.session.flush()

        # Verify record was written
        verified = await self.session.get(PointUsageHistory, record.id)
        if verified is None:
            raise WriteVerificationError(f"Usage record {record.id} not found after insert")
        return verified

    async def list_recent(self, user_id: int, limit: int) -> list[PointUsageHistory]:
        """Newest records first."""
        stmt = (
            select(PointUsageHistory)
            .where(PointUsageHistory.user_id == user_id)
            .order_by(PointUsageHistory.created_at.desc(), PointUsageHistory.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_user(self, user_id: int) -> int:
        stmt = select(func.count(PointUsageHistory.id)).where(
            PointUsageHistory.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())
