"""SQLAlchemy models for persistent storage.

This module defines the database schema for competitions, price history,
token pairs and bets.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class CompetitionModel(Base):
    """A two-token competition and its lifecycle state."""

    __tablename__ = "competitions"

    competition_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    token_a_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token_a_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    token_a_name: Mapped[str] = mapped_column(String(128), nullable=False)
    token_a_logo: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_b_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token_b_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    token_b_name: Mapped[str] = mapped_column(String(128), nullable=False)
    token_b_logo: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="setup")
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voting_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    bet_amount: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False, default=Decimal("0.1"))
    platform_fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("15")
    )
    total_pool: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False, default=Decimal("0"))
    total_bets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    winner_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    token_a_start_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 12), nullable=True)
    token_b_start_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 12), nullable=True)
    token_a_end_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 12), nullable=True)
    token_b_end_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 12), nullable=True)
    token_a_performance: Mapped[Decimal | None] = mapped_column(Numeric(20, 10), nullable=True)
    token_b_performance: Mapped[Decimal | None] = mapped_column(Numeric(20, 10), nullable=True)

    created_by: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('setup', 'voting', 'active', 'closed', 'resolved', 'cancelled', 'paused')",
            name="ck_competitions_status",
        ),
        Index("idx_competitions_status", "status"),
        Index("idx_competitions_end_time", "end_time"),
    )


class PriceSampleModel(Base):
    """Historical price observations per token."""

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(30, 12), nullable=False)
    volume: Mapped[Decimal | None] = mapped_column(Numeric(30, 6), nullable=True)
    market_cap: Mapped[Decimal | None] = mapped_column(Numeric(30, 2), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("idx_price_history_token_ts", "token_address", "timestamp"),
    )


class TokenPairModel(Base):
    """Candidate token pairings for automated competitions."""

    __tablename__ = "token_pairs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    token_a_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token_a_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    token_a_name: Mapped[str] = mapped_column(String(128), nullable=False)
    token_a_logo: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_b_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token_b_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    token_b_name: Mapped[str] = mapped_column(String(128), nullable=False)
    token_b_logo: Mapped[str | None] = mapped_column(Text, nullable=True)
    compatibility_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="general")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("token_a_address", "token_b_address", name="uq_token_pairs_tokens"),
        Index("idx_token_pairs_active", "is_active"),
    )


class BetModel(Base):
    """A user's stake on one token of a competition."""

    __tablename__ = "bets"

    bet_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    chosen_token: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 9), nullable=False)
    payout_amount: Mapped[Decimal | None] = mapped_column(Numeric(20, 9), nullable=True)
    claimed_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        CheckConstraint(
            "claimed_status IN ('pending', 'claimed', 'expired', 'refunded')",
            name="ck_bets_claimed_status",
        ),
        UniqueConstraint("competition_id", "user_wallet", name="uq_bets_competition_wallet"),
        Index("idx_bets_competition", "competition_id"),
    )
