"""add point ledger and usage journal

Revision ID: 2026_10_18_0001
Revises: 2026_10_18_0000
Create Date: 2026-10-18 00:01:00.000000

Adds:
- point_transactions: one row per acquired batch with its own expiry
- point_usage_history: append-only spend journal
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_18_0001"
down_revision: str | None = "2026_10_18_0000"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create ledger and journal tables."""

    # ========================================================================
    # Acquisition ledger
    # ========================================================================
    op.create_table(
        "point_transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column("is_correction", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint("amount > 0", name="ck_point_transactions_amount_positive"),
        sa.CheckConstraint("kind IN ('free', 'paid')", name="ck_point_transactions_kind"),
        sa.CheckConstraint(
            "source IN ('daily_attendance', 'purchase', 'referral', 'admin_grant', 'migration')",
            name="ck_point_transactions_source",
        ),
    )

    op.create_index("ix_point_transactions_user_id", "point_transactions", ["user_id"])
    op.create_index(
        "idx_point_transactions_user_active",
        "point_transactions",
        ["user_id", "kind", "expires_at"],
    )
    op.create_index("idx_point_transactions_source", "point_transactions", ["source"])
    op.create_index(
        "idx_point_transactions_user_created",
        "point_transactions",
        ["user_id", "created_at"],
    )
    op.create_index(
        "idx_point_transactions_expiring",
        "point_transactions",
        ["expires_at"],
        postgresql_where=sa.text("balance > 0"),
    )

    # ========================================================================
    # Spend journal
    # ========================================================================
    op.create_table(
        "point_usage_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("points_used", sa.BigInteger(), nullable=False),
        sa.Column("usage_type", sa.String(30), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("related_chat_id", sa.BigInteger(), nullable=True),
        sa.Column("related_message_id", sa.BigInteger(), nullable=True),
        sa.Column("transaction_details", JSONB(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint("points_used > 0", name="ck_point_usage_points_positive"),
    )

    op.create_index(
        "idx_point_usage_user_created",
        "point_usage_history",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_point_usage_user_created", table_name="point_usage_history")
    op.drop_table("point_usage_history")

    op.drop_index("idx_point_transactions_expiring", table_name="point_transactions")
    op.drop_index("idx_point_transactions_user_created", table_name="point_transactions")
    op.drop_index("idx_point_transactions_source", table_name="point_transactions")
    op.drop_index("idx_point_transactions_user_active", table_name="point_transactions")
    op.drop_index("ix_point_transactions_user_id", table_name="point_transactions")
    op.drop_table("point_transactions")
