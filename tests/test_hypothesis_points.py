"""
Hypothesis Property-Based Tests for the spend protocol.

Checks the debit split and merged history pagination over generated inputs.
"""

from datetime import UTC, datetime, timedelta

from hypothesis import assume, given, settings
from hypothesis import strategies as st

from pointledger.models.domain import HistoryRecord
from pointledger.services.balance_cache import compute_debit
from pointledger.services.points import merge_history

# ============================================================================
# Hypothesis Strategies
# ============================================================================

balances = st.integers(min_value=0, max_value=1_000_000)
costs = st.integers(min_value=0, max_value=2_000_000)

BASE_TIME = datetime(2026, 10, 18, tzinfo=UTC)


@st.composite
def history_streams(draw, category: str):
    """Newest-first records with distinct ids."""
    offsets = draw(st.lists(st.integers(min_value=0, max_value=10_000), max_size=30))
    records = [
        HistoryRecord(category, record_id, 1, None, BASE_TIME - timedelta(seconds=seconds))
        for record_id, seconds in enumerate(sorted(offsets), start=1)
    ]
    return sorted(records, key=lambda r: (r.created_at, r.record_id), reverse=True)


# ============================================================================
# Debit Split Properties
# ============================================================================


class TestDebitSplitProperties:
    """Properties of compute_debit for affordable spends."""

    @given(free=balances, paid=balances, cost=costs)
    @settings(max_examples=300)
    def test_split_sums_to_cost(self, free: int, paid: int, cost: int):
        assume(free + paid >= cost)
        split = compute_debit(free, paid, cost)
        assert split.free_used + split.paid_used == cost

    @given(free=balances, paid=balances, cost=costs)
    def test_never_negative(self, free: int, paid: int, cost: int):
        assume(free + paid >= cost)
        split = compute_debit(free, paid, cost)
        assert split.free_after >= 0
        assert split.paid_after >= 0

    @given(free=balances, paid=balances, cost=costs)
    def test_conserves_points(self, free: int, paid: int, cost: int):
        assume(free + paid >= cost)
        split = compute_debit(free, paid, cost)
        assert split.free_after + split.paid_after == free + paid - cost

    @given(free=balances, paid=balances, cost=costs)
    def test_free_consumed_first(self, free: int, paid: int, cost: int):
        assume(free + paid >= cost)
        split = compute_debit(free, paid, cost)
        if split.paid_used > 0:
            assert split.free_after == 0
        assert split.free_used == min(free, cost)


# ============================================================================
# History Merge Properties
# ============================================================================


class TestMergeHistoryProperties:
    """Pages of the merged stream partition it exactly."""

    @given(
        earn=history_streams("earn"),
        spend=history_streams("spend"),
        limit=st.integers(min_value=1, max_value=10),
    )
    def test_pages_concatenate_to_full_merge(self, earn, spend, limit: int):
        total = len(earn) + len(spend)
        full = merge_history(earn, spend, offset=0, limit=total or 1)

        paged = []
        for offset in range(0, total, limit):
            paged.extend(merge_history(earn, spend, offset=offset, limit=limit))

        assert paged == full
        assert len(full) == total

    @given(earn=history_streams("earn"), spend=history_streams("spend"))
    def test_merged_is_newest_first(self, earn, spend):
        merged = merge_history(earn, spend, offset=0, limit=len(earn) + len(spend) + 1)
        timestamps = [r.created_at for r in merged]
        assert timestamps == sorted(timestamps, reverse=True)
