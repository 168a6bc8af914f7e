"""create points table

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 00:00:00.000000

Per-user cached balance. Predates the ledger; existing deployments already
hold this table with live balances that the ledger migration converts.
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_18_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the points balance cache."""
    op.create_table(
        "points",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("free_points", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("paid_points", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_attended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint("free_points >= 0", name="ck_points_free_non_negative"),
        sa.CheckConstraint("paid_points >= 0", name="ck_points_paid_non_negative"),
        sa.UniqueConstraint("user_id", name="uq_points_user_id"),
    )


def downgrade() -> None:
    op.drop_table("points")
