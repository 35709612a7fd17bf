"""Repository pattern implementations for data access.

Each repository is bound to one ``AsyncSession``; committing is left to the
caller (see ``DatabaseManager.get_async_session``). Rows are converted to the
domain dataclasses in ``tokenwars.models`` on the way out.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update

from tokenwars.models import (
    Bet,
    Competition,
    CompetitionDataError,
    CompetitionDraft,
    CompetitionStatus,
    Payout,
    PriceSample,
    TokenInfo,
    TokenPair,
    ensure_utc,
)
from tokenwars.storage.models import BetModel, CompetitionModel, PriceSampleModel, TokenPairModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Columns callers may change through update_fields.
COMPETITION_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "winner_token",
        "token_a_start_price",
        "token_b_start_price",
        "token_a_end_price",
        "token_b_end_price",
        "token_a_performance",
        "token_b_performance",
        "total_pool",
        "total_bets",
        "resolution_note",
        "resolved_at",
    }
)


def competition_from_model(model: CompetitionModel) -> Competition:
    """Convert a row to a ``Competition``.

    Raises:
        CompetitionDataError: If the stored status is not a known value.
    """
    try:
        status = CompetitionStatus(model.status)
    except ValueError as e:
        raise CompetitionDataError(
            f"competition {model.competition_id} has unknown status {model.status!r}"
        ) from e
    return Competition(
        competition_id=model.competition_id,
        token_a=TokenInfo(
            address=model.token_a_address or "",
            symbol=model.token_a_symbol or "",
            name=model.token_a_name or "",
            logo_uri=model.token_a_logo,
        ),
        token_b=TokenInfo(
            address=model.token_b_address or "",
            symbol=model.token_b_symbol or "",
            name=model.token_b_name or "",
            logo_uri=model.token_b_logo,
        ),
        status=status,
        start_time=ensure_utc(model.start_time),
        voting_end_time=ensure_utc(model.voting_end_time),
        end_time=ensure_utc(model.end_time),
        bet_amount=model.bet_amount,
        platform_fee_percentage=model.platform_fee_percentage,
        total_pool=model.total_pool if model.total_pool is not None else Decimal("0"),
        total_bets=model.total_bets or 0,
        winner_token=model.winner_token,
        token_a_start_price=model.token_a_start_price,
        token_b_start_price=model.token_b_start_price,
        token_a_end_price=model.token_a_end_price,
        token_b_end_price=model.token_b_end_price,
        token_a_performance=model.token_a_performance,
        token_b_performance=model.token_b_performance,
        created_by=model.created_by,
        resolution_note=model.resolution_note,
        resolved_at=ensure_utc(model.resolved_at),
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


def price_sample_from_model(model: PriceSampleModel) -> PriceSample:
    return PriceSample(
        token_address=model.token_address,
        price=model.price,
        timestamp=ensure_utc(model.timestamp),  # type: ignore[arg-type]
        volume=model.volume,
        market_cap=model.market_cap,
        source=model.source,
        confidence=model.confidence_score,
    )


def token_pair_from_model(model: TokenPairModel) -> TokenPair:
    return TokenPair(
        pair_id=model.id,
        token_a=TokenInfo(
            address=model.token_a_address,
            symbol=model.token_a_symbol,
            name=model.token_a_name,
            logo_uri=model.token_a_logo,
        ),
        token_b=TokenInfo(
            address=model.token_b_address,
            symbol=model.token_b_symbol,
            name=model.token_b_name,
            logo_uri=model.token_b_logo,
        ),
        compatibility_score=model.compatibility_score,
        category=model.category,
        is_active=model.is_active,
        last_used=ensure_utc(model.last_used),
    )


def bet_from_model(model: BetModel) -> Bet:
    return Bet(
        bet_id=model.bet_id,
        user_wallet=model.user_wallet,
        competition_id=model.competition_id,
        chosen_token=model.chosen_token,
        amount=model.amount,
        payout_amount=model.payout_amount,
        claimed_status=model.claimed_status,
    )


class CompetitionRepository:
    """Repository for competitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, competition_id: str) -> Competition | None:
        model = await self.session.get(CompetitionModel, competition_id)
        return competition_from_model(model) if model else None

    async def list_by_status(self, statuses: Iterable[CompetitionStatus]) -> list[CompetitionModel]:
        """Return raw rows so callers can skip individual corrupt records."""
        values = [s.value for s in statuses]
        result = await self.session.execute(
            select(CompetitionModel)
            .where(CompetitionModel.status.in_(values))
            .order_by(CompetitionModel.start_time.asc())
        )
        return list(result.scalars().all())

    async def insert(self, draft: CompetitionDraft) -> Competition:
        model = CompetitionModel(
            token_a_address=draft.token_a.address,
            token_a_symbol=draft.token_a.symbol,
            token_a_name=draft.token_a.name,
            token_a_logo=draft.token_a.logo_uri,
            token_b_address=draft.token_b.address,
            token_b_symbol=draft.token_b.symbol,
            token_b_name=draft.token_b.name,
            token_b_logo=draft.token_b.logo_uri,
            status=draft.status.value,
            start_time=draft.start_time,
            voting_end_time=draft.voting_end_time,
            end_time=draft.end_time,
            bet_amount=draft.bet_amount,
            platform_fee_percentage=draft.platform_fee_percentage,
            total_pool=Decimal("0"),
            total_bets=0,
            created_by=draft.created_by,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        return competition_from_model(model)

    async def update_fields(
        self,
        competition_id: str,
        values: dict[str, Any],
        *,
        expected_status: CompetitionStatus | None = None,
    ) -> Competition | None:
        """Update a competition, optionally guarded by its current status.

        Returns:
            The updated competition, or None if no row matched (unknown id or
            the status guard failed).
        """
        unknown = set(values) - COMPETITION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update competition fields: {sorted(unknown)}")

        row_values = {
            key: (value.value if isinstance(value, CompetitionStatus) else value)
            for key, value in values.items()
        }
        row_values["updated_at"] = datetime.now(UTC)

        stmt = update(CompetitionModel).where(CompetitionModel.competition_id == competition_id)
        if expected_status is not None:
            stmt = stmt.where(CompetitionModel.status == expected_status.value)
        result = await self.session.execute(stmt.values(**row_values))
        if result.rowcount == 0:
            return None
        await self.session.flush()
        model = await self.session.get(CompetitionModel, competition_id, populate_existing=True)
        return competition_from_model(model) if model else None


class PriceSampleRepository:
    """Repository for the price_history table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add_many(self, samples: Sequence[PriceSample]) -> int:
        for sample in samples:
            self.session.add(
                PriceSampleModel(
                    token_address=sample.token_address,
                    price=sample.price,
                    volume=sample.volume,
                    market_cap=sample.market_cap,
                    timestamp=sample.timestamp,
                    source=sample.source,
                    confidence_score=sample.confidence,
                )
            )
        await self.session.flush()
        return len(samples)

    async def list_range(self, token_address: str, start: datetime, end: datetime) -> list[PriceSample]:
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError("start/end must be timezone-aware")
        result = await self.session.execute(
            select(PriceSampleModel)
            .where(
                (PriceSampleModel.token_address == token_address)
                & (PriceSampleModel.timestamp >= start)
                & (PriceSampleModel.timestamp <= end)
            )
            .order_by(PriceSampleModel.timestamp.asc())
        )
        return [price_sample_from_model(m) for m in result.scalars().all()]

    async def delete_older_than(self, cutoff: datetime, *, keep: Iterable[str] = ()) -> int:
        """Delete samples older than ``cutoff`` except for tokens in ``keep``."""
        stmt = delete(PriceSampleModel).where(PriceSampleModel.timestamp < cutoff)
        keep_list = list(keep)
        if keep_list:
            stmt = stmt.where(PriceSampleModel.token_address.not_in(keep_list))
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)


class TokenPairRepository:
    """Repository for candidate token pairs."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, pair_id: str) -> TokenPair | None:
        model = await self.session.get(TokenPairModel, pair_id)
        return token_pair_from_model(model) if model else None

    async def list_pairs(self, *, active_only: bool = True) -> list[TokenPair]:
        stmt = select(TokenPairModel).order_by(TokenPairModel.compatibility_score.desc())
        if active_only:
            stmt = stmt.where(TokenPairModel.is_active.is_(True))
        result = await self.session.execute(stmt)
        return [token_pair_from_model(m) for m in result.scalars().all()]

    async def insert(self, pair: TokenPair) -> TokenPair:
        model = TokenPairModel(
            id=pair.pair_id,
            token_a_address=pair.token_a.address,
            token_a_symbol=pair.token_a.symbol,
            token_a_name=pair.token_a.name,
            token_a_logo=pair.token_a.logo_uri,
            token_b_address=pair.token_b.address,
            token_b_symbol=pair.token_b.symbol,
            token_b_name=pair.token_b.name,
            token_b_logo=pair.token_b.logo_uri,
            compatibility_score=pair.compatibility_score,
            category=pair.category,
            is_active=pair.is_active,
            last_used=pair.last_used,
        )
        self.session.add(model)
        await self.session.flush()
        return pair

    async def mark_used(self, pair_id: str, when: datetime) -> bool:
        result = await self.session.execute(
            update(TokenPairModel).where(TokenPairModel.id == pair_id).values(last_used=when)
        )
        return bool(result.rowcount)


class BetRepository:
    """Repository for bets (read and payout bookkeeping only)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_for_competition(self, competition_id: str) -> list[Bet]:
        result = await self.session.execute(
            select(BetModel).where(BetModel.competition_id == competition_id).order_by(BetModel.created_at)
        )
        return [bet_from_model(m) for m in result.scalars().all()]

    async def insert(self, bet: Bet) -> Bet:
        self.session.add(
            BetModel(
                bet_id=bet.bet_id,
                user_wallet=bet.user_wallet,
                competition_id=bet.competition_id,
                chosen_token=bet.chosen_token,
                amount=bet.amount,
                payout_amount=bet.payout_amount,
                claimed_status=bet.claimed_status,
            )
        )
        await self.session.flush()
        return bet

    async def apply_payouts(self, competition_id: str, payouts: Sequence[Payout]) -> int:
        updated = 0
        for payout in payouts:
            result = await self.session.execute(
                update(BetModel)
                .where((BetModel.bet_id == payout.bet_id) & (BetModel.competition_id == competition_id))
                .values(payout_amount=payout.amount, claimed_status=payout.claimed_status)
            )
            updated += int(result.rowcount or 0)
        await self.session.flush()
        return updated
