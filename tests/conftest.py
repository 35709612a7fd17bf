"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from tokenwars.engine.lifecycle import CompetitionManager, LifecycleConfig
from tokenwars.events import EventBus
from tokenwars.models import (
    Bet,
    Competition,
    CompetitionConfig,
    CompetitionDataError,
    CompetitionDraft,
    CompetitionStatus,
    Payout,
    PriceQuote,
    TokenInfo,
    TokenPair,
)
from tokenwars.prices.client import PriceSourceError
from tokenwars.prices.sampler import PriceSampler
from tokenwars.scheduler import SimulatedScheduler

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

TOKEN_A = TokenInfo(
    address="So11111111111111111111111111111111111111112",
    symbol="SOL",
    name="Wrapped SOL",
)
TOKEN_B = TokenInfo(
    address="JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN",
    symbol="JUP",
    name="Jupiter",
)
TOKEN_C = TokenInfo(
    address="DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
    symbol="BONK",
    name="Bonk",
)

PriceFn = Callable[[datetime], Decimal]


class FakeCompetitionStore:
    """In-memory stand-in for the SQL store with failure injection."""

    def __init__(self) -> None:
        self.competitions: dict[str, Competition] = {}
        self.corrupt: list[CompetitionDataError] = []
        self.pairs: dict[str, TokenPair] = {}
        self.bets: dict[str, list[Bet]] = defaultdict(list)
        self.payouts: dict[str, list[Payout]] = {}
        self.status_history: dict[str, list[CompetitionStatus]] = defaultdict(list)
        self.fail_updates = 0
        self.fail_on_status: set[CompetitionStatus] = set()
        self.fail_inserts = False
        self.fail_lists = False
        self.fail_payouts = 0
        self.available = True
        self.update_calls = 0
        self.payout_calls = 0
        self._next_id = 0

    def seed(self, competition: Competition) -> Competition:
        self.competitions[competition.competition_id] = competition
        self.status_history[competition.competition_id].append(competition.status)
        return competition

    def add_bet(self, competition_id: str, wallet: str, token: str, amount: str) -> Bet:
        bet = Bet(
            bet_id=f"bet-{wallet}",
            user_wallet=wallet,
            competition_id=competition_id,
            chosen_token=token,
            amount=Decimal(amount),
        )
        self.bets[competition_id].append(bet)
        return bet

    async def ping(self) -> bool:
        if not self.available:
            raise ConnectionError("database unavailable")
        return True

    async def list_competitions(
        self, statuses: Iterable[CompetitionStatus]
    ) -> list[Competition | CompetitionDataError]:
        if self.fail_lists:
            raise ConnectionError("database unavailable")
        wanted = set(statuses)
        results: list[Competition | CompetitionDataError] = [
            c for c in self.competitions.values() if c.status in wanted
        ]
        results.extend(self.corrupt)
        return results

    async def get_competition(self, competition_id: str) -> Competition | None:
        return self.competitions.get(competition_id)

    async def insert_competition(self, draft: CompetitionDraft) -> Competition:
        if self.fail_inserts:
            raise ConnectionError("insert failed")
        self._next_id += 1
        competition = Competition(
            competition_id=f"comp-{self._next_id}",
            token_a=draft.token_a,
            token_b=draft.token_b,
            status=draft.status,
            start_time=draft.start_time,
            voting_end_time=draft.voting_end_time,
            end_time=draft.end_time,
            bet_amount=draft.bet_amount,
            platform_fee_percentage=draft.platform_fee_percentage,
            created_by=draft.created_by,
        )
        return self.seed(competition)

    async def update_competition_status(
        self,
        competition_id: str,
        status: CompetitionStatus,
        extra_fields: dict[str, Any] | None = None,
        *,
        expected_status: CompetitionStatus | None = None,
    ) -> Competition | None:
        self.update_calls += 1
        if self.fail_updates > 0:
            self.fail_updates -= 1
            raise ConnectionError("database unavailable")
        if status in self.fail_on_status:
            raise ConnectionError(f"write of {status.value} rejected")
        current = self.competitions.get(competition_id)
        if current is None:
            return None
        if expected_status is not None and current.status != expected_status:
            return None
        updated = replace(current, status=status, **(extra_fields or {}))
        self.competitions[competition_id] = updated
        self.status_history[competition_id].append(status)
        return updated

    async def list_token_pairs(self, *, active_only: bool = True) -> list[TokenPair]:
        return [p for p in self.pairs.values() if p.is_active or not active_only]

    async def mark_token_pair_used(self, pair_id: str, when: datetime) -> None:
        if pair_id in self.pairs:
            self.pairs[pair_id] = replace(self.pairs[pair_id], last_used=when)

    async def list_bets(self, competition_id: str) -> list[Bet]:
        return list(self.bets.get(competition_id, []))

    async def record_payouts(self, competition_id: str, payouts: Sequence[Payout]) -> int:
        self.payout_calls += 1
        if self.fail_payouts > 0:
            self.fail_payouts -= 1
            raise ConnectionError("payout write failed")
        self.payouts[competition_id] = list(payouts)
        return len(payouts)


class FakePriceSource:
    """Quotes priced by per-token functions of the simulated clock."""

    def __init__(self, scheduler: SimulatedScheduler) -> None:
        self._scheduler = scheduler
        self.prices: dict[str, PriceFn] = {}
        self.market_caps: dict[str, Decimal] = {}
        self.fail = False
        self.calls: list[list[str]] = []

    def set_price(self, address: str, price: str | PriceFn) -> None:
        if callable(price):
            self.prices[address] = price
        else:
            fixed = Decimal(price)
            self.prices[address] = lambda _now: fixed

    async def fetch_current_prices(self, addresses: Sequence[str]) -> list[PriceQuote]:
        self.calls.append(list(addresses))
        if self.fail:
            raise PriceSourceError("price source unavailable")
        now = self._scheduler.now()
        return [
            PriceQuote(
                address=address,
                price=self.prices[address](now),
                timestamp=now,
                market_cap=self.market_caps.get(address),
                source="fake",
            )
            for address in addresses
            if address in self.prices
        ]


def make_competition(
    competition_id: str = "comp-seeded",
    *,
    status: CompetitionStatus = CompetitionStatus.SETUP,
    start: datetime = T0 + timedelta(minutes=5),
    voting: timedelta = timedelta(minutes=15),
    active: timedelta = timedelta(minutes=60),
    token_a: TokenInfo = TOKEN_A,
    token_b: TokenInfo = TOKEN_B,
) -> Competition:
    return Competition(
        competition_id=competition_id,
        token_a=token_a,
        token_b=token_b,
        status=status,
        start_time=start,
        voting_end_time=start + voting,
        end_time=start + voting + active,
    )


def make_config(
    pair: TokenPair,
    *,
    start_delay: timedelta = timedelta(minutes=5),
    voting: timedelta = timedelta(minutes=15),
    active: timedelta = timedelta(minutes=60),
) -> CompetitionConfig:
    return CompetitionConfig(
        pair=pair,
        start_delay=start_delay,
        voting_duration=voting,
        active_duration=active,
        bet_amount=Decimal("0.1"),
        platform_fee_percentage=Decimal("15"),
    )


@pytest.fixture
def scheduler() -> SimulatedScheduler:
    return SimulatedScheduler(start=T0)


@pytest.fixture
def store() -> FakeCompetitionStore:
    return FakeCompetitionStore()


@pytest.fixture
def price_source(scheduler: SimulatedScheduler) -> FakePriceSource:
    source = FakePriceSource(scheduler)
    source.set_price(TOKEN_A.address, "100")
    source.set_price(TOKEN_B.address, "1")
    source.set_price(TOKEN_C.address, "0.00002")
    return source


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def pair() -> TokenPair:
    return TokenPair(pair_id="pair-1", token_a=TOKEN_A, token_b=TOKEN_B, compatibility_score=0.9)


@pytest.fixture
async def sampler(price_source: FakePriceSource, scheduler: SimulatedScheduler):
    """A started sampler with in-memory sample storage."""
    sampler = PriceSampler(price_source, scheduler)
    await sampler.start()
    yield sampler
    await sampler.stop()


@pytest.fixture
def manager(
    store: FakeCompetitionStore,
    sampler: PriceSampler,
    scheduler: SimulatedScheduler,
    events: EventBus,
) -> CompetitionManager:
    return CompetitionManager(
        store,
        sampler,
        scheduler,
        events,
        config=LifecycleConfig(twap_window=timedelta(minutes=10), transition_retry=timedelta(seconds=30)),
    )
