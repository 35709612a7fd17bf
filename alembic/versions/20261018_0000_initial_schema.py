"""Initial schema for competitions, price history, token pairs and bets.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _token_columns(prefix: str) -> list[sa.Column]:
    return [
        sa.Column(f"{prefix}_address", sa.String(64), nullable=False),
        sa.Column(f"{prefix}_symbol", sa.String(32), nullable=False),
        sa.Column(f"{prefix}_name", sa.String(128), nullable=False),
        sa.Column(f"{prefix}_logo", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    # Competitions table
    op.create_table(
        "competitions",
        sa.Column("competition_id", sa.String(36), nullable=False),
        *_token_columns("token_a"),
        *_token_columns("token_b"),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voting_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bet_amount", sa.Numeric(20, 9), nullable=False),
        sa.Column("platform_fee_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("total_pool", sa.Numeric(20, 9), nullable=False),
        sa.Column("total_bets", sa.Integer(), nullable=False),
        sa.Column("winner_token", sa.String(64), nullable=True),
        sa.Column("token_a_start_price", sa.Numeric(30, 12), nullable=True),
        sa.Column("token_b_start_price", sa.Numeric(30, 12), nullable=True),
        sa.Column("token_a_end_price", sa.Numeric(30, 12), nullable=True),
        sa.Column("token_b_end_price", sa.Numeric(30, 12), nullable=True),
        sa.Column("token_a_performance", sa.Numeric(20, 10), nullable=True),
        sa.Column("token_b_performance", sa.Numeric(20, 10), nullable=True),
        sa.Column("created_by", sa.String(16), nullable=False),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("competition_id"),
        sa.CheckConstraint(
            "status IN ('setup', 'voting', 'active', 'closed', 'resolved', 'cancelled', 'paused')",
            name="ck_competitions_status",
        ),
    )
    op.create_index("idx_competitions_status", "competitions", ["status"])
    op.create_index("idx_competitions_end_time", "competitions", ["end_time"])

    # Price history table
    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_address", sa.String(64), nullable=False),
        sa.Column("price", sa.Numeric(30, 12), nullable=False),
        sa.Column("volume", sa.Numeric(30, 6), nullable=True),
        sa.Column("market_cap", sa.Numeric(30, 2), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(32), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_price_history_token_ts", "price_history", ["token_address", "timestamp"])

    # Token pairs table
    op.create_table(
        "token_pairs",
        sa.Column("id", sa.String(36), nullable=False),
        *_token_columns("token_a"),
        *_token_columns("token_b"),
        sa.Column("compatibility_score", sa.Float(), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_used", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_a_address", "token_b_address", name="uq_token_pairs_tokens"),
    )
    op.create_index("idx_token_pairs_active", "token_pairs", ["is_active"])

    # Bets table
    op.create_table(
        "bets",
        sa.Column("bet_id", sa.String(36), nullable=False),
        sa.Column("user_wallet", sa.String(64), nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("chosen_token", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(20, 9), nullable=False),
        sa.Column("payout_amount", sa.Numeric(20, 9), nullable=True),
        sa.Column("claimed_status", sa.String(16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("bet_id"),
        sa.UniqueConstraint("competition_id", "user_wallet", name="uq_bets_competition_wallet"),
        sa.CheckConstraint(
            "claimed_status IN ('pending', 'claimed', 'expired', 'refunded')",
            name="ck_bets_claimed_status",
        ),
    )
    op.create_index("idx_bets_competition", "bets", ["competition_id"])


def downgrade() -> None:
    op.drop_index("idx_bets_competition", table_name="bets")
    op.drop_table("bets")
    op.drop_index("idx_token_pairs_active", table_name="token_pairs")
    op.drop_table("token_pairs")
    op.drop_index("idx_price_history_token_ts", table_name="price_history")
    op.drop_table("price_history")
    op.drop_index("idx_competitions_end_time", table_name="competitions")
    op.drop_index("idx_competitions_status", table_name="competitions")
    op.drop_table("competitions")
