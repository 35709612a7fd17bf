"""Tests for the competition phase state machine."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from functools import partial

import pytest

from conftest import (
    T0,
    TOKEN_A,
    TOKEN_B,
    FakeCompetitionStore,
    FakePriceSource,
    make_competition,
    make_config,
)
from tokenwars.engine.lifecycle import CompetitionCreationError, CompetitionManager, LifecycleConfig
from tokenwars.engine.pairs import CompetitionValidationError
from tokenwars.events import EventBus
from tokenwars.models import (
    LIFECYCLE_ORDER,
    CompetitionDataError,
    CompetitionStatus,
    EventType,
    TokenPair,
)
from tokenwars.prices.sampler import PriceSampler
from tokenwars.scheduler import SimulatedScheduler


def phase_timers(scheduler: SimulatedScheduler) -> list:
    """Pending scheduler calls that drive phase transitions."""
    return [c for c in scheduler.pending() if isinstance(c.callback, partial)]


def rising_after(switch_at: datetime, before: str, after: str):
    return lambda now: Decimal(before) if now < switch_at else Decimal(after)


# ============================================================================
# Full lifecycle
# ============================================================================


class TestTimeDrivenLifecycle:
    """A competition created at T0 with 5m delay, 15m voting, 60m active."""

    @pytest.mark.asyncio
    async def test_walks_every_phase_and_resolves_winner(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        price_source: FakePriceSource,
        sampler: PriceSampler,
        events: EventBus,
        pair: TokenPair,
    ) -> None:
        price_source.set_price(TOKEN_A.address, rising_after(T0 + timedelta(minutes=50), "100", "150"))
        price_source.set_price(TOKEN_B.address, "1")

        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.add_bet(cid, "alice", TOKEN_A.address, "1")
        store.add_bet(cid, "bob", TOKEN_B.address, "3")

        assert competition.status == CompetitionStatus.SETUP
        assert competition.start_time == T0 + timedelta(minutes=5)
        assert competition.voting_end_time == T0 + timedelta(minutes=20)
        assert competition.end_time == T0 + timedelta(minutes=80)
        timer = manager.pending_timer(cid)
        assert timer is not None
        assert timer.target_phase == CompetitionStatus.VOTING
        assert timer.fire_at == T0 + timedelta(minutes=5)

        await scheduler.advance_to(T0 + timedelta(minutes=5))
        assert manager.get(cid).status == CompetitionStatus.VOTING
        assert sampler.tracked == frozenset()

        await scheduler.advance_to(T0 + timedelta(minutes=20))
        assert manager.get(cid).status == CompetitionStatus.ACTIVE
        assert sampler.tracked == {TOKEN_A.address, TOKEN_B.address}

        await scheduler.advance_to(T0 + timedelta(minutes=80))
        resolved = store.competitions[cid]
        assert resolved.status == CompetitionStatus.RESOLVED
        assert resolved.winner_token == TOKEN_A.address
        assert resolved.token_a_start_price == Decimal("100")
        assert resolved.token_a_end_price == Decimal("150")
        assert resolved.token_a_performance == Decimal("0.5")
        assert resolved.token_b_performance == Decimal("0")
        assert resolved.resolved_at == T0 + timedelta(minutes=80)

        # Released from memory, sampling and pins.
        assert manager.get(cid) is None
        assert manager.pending_timer(cid) is None
        assert sampler.tracked == frozenset()
        assert sampler.pinned == frozenset()

        payouts = {p.bet_id: p for p in store.payouts[cid]}
        assert payouts["bet-alice"].amount == Decimal("3.4")
        assert payouts["bet-alice"].claimed_status == "pending"
        assert payouts["bet-bob"].amount == Decimal("0")
        assert payouts["bet-bob"].claimed_status == "expired"

        transitions = [
            e.payload["to_status"] for e in events.recent() if e.type == EventType.PHASE_CHANGED
        ]
        assert transitions == ["voting", "active", "closed", "resolved"]
        resolved_events = [e for e in events.recent() if e.type == EventType.RESOLVED]
        assert len(resolved_events) == 1
        assert resolved_events[0].payload["winner_symbol"] == "SOL"

    @pytest.mark.asyncio
    async def test_persisted_status_never_regresses(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        price_source: FakePriceSource,
        pair: TokenPair,
    ) -> None:
        price_source.set_price(TOKEN_A.address, rising_after(T0 + timedelta(minutes=50), "100", "90"))
        competition = await manager.create_manual(make_config(pair))

        await scheduler.advance_to(T0 + timedelta(hours=2))

        history = store.status_history[competition.competition_id]
        ranks = [LIFECYCLE_ORDER.index(s) for s in history]
        assert ranks == sorted(ranks)
        assert history[-1] == CompetitionStatus.RESOLVED
        # Token B held flat while A fell, so B wins.
        assert store.competitions[competition.competition_id].winner_token == TOKEN_B.address

    @pytest.mark.asyncio
    async def test_zero_start_delay_opens_voting_immediately(
        self, manager: CompetitionManager, pair: TokenPair
    ) -> None:
        competition = await manager.create_manual(make_config(pair, start_delay=timedelta(0)))

        assert competition.status == CompetitionStatus.VOTING
        assert manager.pending_timer(competition.competition_id).target_phase == CompetitionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_at_most_one_phase_timer_per_competition(
        self,
        manager: CompetitionManager,
        scheduler: SimulatedScheduler,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id

        for minutes in (1, 5, 10, 20, 40):
            await scheduler.advance_to(T0 + timedelta(minutes=minutes))
            await manager.load_and_recover()
            assert len(phase_timers(scheduler)) == 1
            assert manager.stats().pending_timers == 1
            assert manager.get(cid) is not None


# ============================================================================
# Resolution edge cases
# ============================================================================


class TestResolution:
    """Tests for winner determination inside the manager."""

    @pytest.mark.asyncio
    async def test_tie_voids_and_refunds(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        events: EventBus,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.add_bet(cid, "alice", TOKEN_A.address, "0.1")
        store.add_bet(cid, "bob", TOKEN_B.address, "0.1")

        await scheduler.advance_to(T0 + timedelta(minutes=80))

        voided = store.competitions[cid]
        assert voided.status == CompetitionStatus.CANCELLED
        assert voided.winner_token is None
        assert voided.resolution_note.startswith("tie")
        assert {p.claimed_status for p in store.payouts[cid]} == {"refunded"}
        assert {p.amount for p in store.payouts[cid]} == {Decimal("0.1")}
        assert manager.get(cid) is None
        assert not [e for e in events.recent() if e.type == EventType.RESOLVED]

    @pytest.mark.asyncio
    async def test_missing_price_data_voids(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        price_source: FakePriceSource,
        pair: TokenPair,
    ) -> None:
        price_source.fail = True
        competition = await manager.create_manual(make_config(pair))

        await scheduler.advance_to(T0 + timedelta(minutes=80))

        voided = store.competitions[competition.competition_id]
        assert voided.status == CompetitionStatus.CANCELLED
        assert voided.resolution_note.startswith("missing price data")

    @pytest.mark.asyncio
    async def test_failed_resolution_write_is_retried(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        price_source: FakePriceSource,
        pair: TokenPair,
    ) -> None:
        price_source.set_price(TOKEN_A.address, rising_after(T0 + timedelta(minutes=50), "100", "120"))
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.fail_on_status = {CompetitionStatus.RESOLVED}

        await scheduler.advance_to(T0 + timedelta(minutes=80))

        assert store.competitions[cid].status == CompetitionStatus.CLOSED
        timer = manager.pending_timer(cid)
        assert timer is not None
        assert timer.target_phase == CompetitionStatus.RESOLVED
        assert timer.fire_at == T0 + timedelta(minutes=80, seconds=30)

        store.fail_on_status = set()
        await scheduler.advance(timedelta(seconds=30))

        assert store.competitions[cid].status == CompetitionStatus.RESOLVED
        assert store.competitions[cid].winner_token == TOKEN_A.address

    @pytest.mark.asyncio
    async def test_corrupt_phase_bounds_void_instead_of_retrying(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.add_bet(cid, "alice", TOKEN_A.address, "0.1")
        await scheduler.advance_to(T0 + timedelta(minutes=20))

        # Row edited underneath the manager: the active phase collapses.
        row = store.competitions[cid]
        store.competitions[cid] = replace(row, voting_end_time=row.end_time)

        await scheduler.advance_to(T0 + timedelta(minutes=80))

        voided = store.competitions[cid]
        assert voided.status == CompetitionStatus.CANCELLED
        assert voided.resolution_note.startswith("invalid competition data")
        assert [p.claimed_status for p in store.payouts[cid]] == ["refunded"]
        assert manager.get(cid) is None
        assert manager.pending_timer(cid) is None

    @pytest.mark.asyncio
    async def test_failed_payout_write_is_retried(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        price_source: FakePriceSource,
        sampler: PriceSampler,
        events: EventBus,
        pair: TokenPair,
    ) -> None:
        price_source.set_price(TOKEN_A.address, rising_after(T0 + timedelta(minutes=50), "100", "150"))
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.add_bet(cid, "alice", TOKEN_A.address, "1")
        store.add_bet(cid, "bob", TOKEN_B.address, "3")
        store.fail_payouts = 1

        await scheduler.advance_to(T0 + timedelta(minutes=80))

        assert store.competitions[cid].status == CompetitionStatus.RESOLVED
        assert cid not in store.payouts
        assert manager.get(cid) is not None
        assert manager.stats().pending_settlements == 1
        timer = manager.pending_timer(cid)
        assert timer.target_phase == CompetitionStatus.RESOLVED
        assert timer.fire_at == T0 + timedelta(minutes=80, seconds=30)
        errors = [e for e in events.recent() if e.type == EventType.ERROR]
        assert errors[-1].payload["operation"] == "payouts"

        # A recovery pass in between must not drop the pending settlement.
        assert await manager.load_and_recover()
        assert manager.get(cid) is not None

        await scheduler.advance(timedelta(seconds=30))

        assert store.payout_calls == 2
        payouts = {p.bet_id: p.amount for p in store.payouts[cid]}
        assert payouts == {"bet-alice": Decimal("3.4"), "bet-bob": Decimal("0")}
        assert manager.get(cid) is None
        assert manager.pending_timer(cid) is None
        assert manager.stats().pending_settlements == 0
        assert sampler.pinned == frozenset()
        assert len([e for e in events.recent() if e.type == EventType.RESOLVED]) == 1


# ============================================================================
# Persistence failures and concurrent changes
# ============================================================================


class TestTransitionFailures:
    """Tests for failed or conflicting writes."""

    @pytest.mark.asyncio
    async def test_failed_write_schedules_retry_and_reports(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        events: EventBus,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.fail_updates = 1

        await scheduler.advance_to(T0 + timedelta(minutes=5))

        assert manager.get(cid).status == CompetitionStatus.SETUP
        timer = manager.pending_timer(cid)
        assert timer.target_phase == CompetitionStatus.VOTING
        assert timer.fire_at == T0 + timedelta(minutes=5, seconds=30)
        errors = [e for e in events.recent() if e.type == EventType.ERROR]
        assert len(errors) == 1
        assert errors[0].payload["operation"] == "advance_phase"

        await scheduler.advance(timedelta(seconds=30))

        assert manager.get(cid).status == CompetitionStatus.VOTING
        assert store.status_history[cid] == [CompetitionStatus.SETUP, CompetitionStatus.VOTING]

    @pytest.mark.asyncio
    async def test_external_cancel_wins_over_timer(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.competitions[cid] = replace(store.competitions[cid], status=CompetitionStatus.CANCELLED)

        await scheduler.advance_to(T0 + timedelta(minutes=5))

        assert store.competitions[cid].status == CompetitionStatus.CANCELLED
        assert manager.get(cid) is None
        assert manager.pending_timer(cid) is None

    @pytest.mark.asyncio
    async def test_advance_phase_unknown_competition(self, manager: CompetitionManager) -> None:
        assert await manager.advance_phase("missing") is False


# ============================================================================
# Recovery
# ============================================================================


class TestRecovery:
    """Tests for load_and_recover."""

    @pytest.mark.asyncio
    async def test_catches_up_overdue_voting_competition(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        sampler: PriceSampler,
        price_source: FakePriceSource,
    ) -> None:
        store.seed(
            make_competition(
                "comp-late",
                status=CompetitionStatus.VOTING,
                start=T0 - timedelta(minutes=30),
            )
        )

        assert await manager.load_and_recover() is True

        competition = manager.get("comp-late")
        assert competition.status == CompetitionStatus.ACTIVE
        assert store.status_history["comp-late"] == [CompetitionStatus.VOTING, CompetitionStatus.ACTIVE]
        assert sampler.tracked == {TOKEN_A.address, TOKEN_B.address}
        assert price_source.calls  # sampled on entering ACTIVE
        timer = manager.pending_timer("comp-late")
        assert timer.target_phase == CompetitionStatus.CLOSED
        assert timer.fire_at == T0 + timedelta(minutes=45)

    @pytest.mark.asyncio
    async def test_catch_up_past_end_resolves_immediately(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
    ) -> None:
        store.seed(
            make_competition(
                "comp-stale",
                status=CompetitionStatus.SETUP,
                start=T0 - timedelta(hours=3),
            )
        )

        await manager.load_and_recover()

        # No samples were ever taken, so the competition is voided.
        assert store.status_history["comp-stale"] == [
            CompetitionStatus.SETUP,
            CompetitionStatus.VOTING,
            CompetitionStatus.ACTIVE,
            CompetitionStatus.CLOSED,
            CompetitionStatus.CANCELLED,
        ]
        assert manager.get("comp-stale") is None

    @pytest.mark.asyncio
    async def test_recovery_is_idempotent(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
    ) -> None:
        store.seed(make_competition("comp-1"))
        store.seed(make_competition("comp-2", status=CompetitionStatus.VOTING, start=T0 - timedelta(minutes=1)))

        assert await manager.load_and_recover()
        timers = {cid: manager.pending_timer(cid) for cid in ("comp-1", "comp-2")}
        statuses = {c.competition_id: c.status for c in manager.competitions()}

        assert await manager.load_and_recover()

        for cid, timer in timers.items():
            assert manager.pending_timer(cid) is timer
            assert not timer.handle.cancelled
        assert {c.competition_id: c.status for c in manager.competitions()} == statuses
        assert len(phase_timers(scheduler)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_recovery_runs_once(
        self,
        sampler: PriceSampler,
        scheduler: SimulatedScheduler,
        events: EventBus,
    ) -> None:
        class SlowListingStore(FakeCompetitionStore):
            def __init__(self) -> None:
                super().__init__()
                self.listed = asyncio.Event()

            async def list_competitions(self, statuses):
                await self.listed.wait()
                return await super().list_competitions(statuses)

        store = SlowListingStore()
        store.seed(make_competition("comp-1"))
        store.seed(make_competition("comp-2"))
        manager = CompetitionManager(
            store,
            sampler,
            scheduler,
            events,
            config=LifecycleConfig(twap_window=timedelta(minutes=10), transition_retry=timedelta(seconds=30)),
        )

        first = asyncio.create_task(manager.load_and_recover())
        await asyncio.sleep(0)

        assert await manager.load_and_recover() is False

        store.listed.set()
        assert await first is True

        assert len(phase_timers(scheduler)) == 2
        for cid in ("comp-1", "comp-2"):
            assert manager.pending_timer(cid).target_phase == CompetitionStatus.VOTING

    @pytest.mark.asyncio
    async def test_skips_corrupt_records(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
    ) -> None:
        store.corrupt.append(CompetitionDataError("row comp-x has unknown status 'archived'"))
        store.seed(replace(make_competition("comp-bad"), end_time=None))
        store.seed(make_competition("comp-good"))

        assert await manager.load_and_recover() is True

        assert [c.competition_id for c in manager.competitions()] == ["comp-good"]

    @pytest.mark.asyncio
    async def test_listing_failure_reports_error(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        events: EventBus,
    ) -> None:
        store.fail_lists = True

        assert await manager.load_and_recover() is False
        assert [e.type for e in events.recent()] == [EventType.ERROR]

    @pytest.mark.asyncio
    async def test_stale_listing_does_not_move_backwards(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        await scheduler.advance_to(T0 + timedelta(minutes=20))
        assert manager.get(cid).status == CompetitionStatus.ACTIVE

        store.competitions[cid] = replace(store.competitions[cid], status=CompetitionStatus.VOTING)
        await manager.load_and_recover()

        assert manager.get(cid).status == CompetitionStatus.ACTIVE
        assert manager.pending_timer(cid).target_phase == CompetitionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_releases_competitions_closed_outside_the_process(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        sampler: PriceSampler,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.competitions[cid] = replace(store.competitions[cid], status=CompetitionStatus.PAUSED)

        await manager.load_and_recover()

        assert manager.get(cid) is None
        assert manager.pending_timer(cid) is None
        assert sampler.pinned == frozenset()


# ============================================================================
# Cancel and pause
# ============================================================================


class TestEscapeStates:
    """Tests for cancel and pause."""

    @pytest.mark.asyncio
    async def test_cancel_refunds_and_releases(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        sampler: PriceSampler,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        await scheduler.advance_to(T0 + timedelta(minutes=25))
        store.add_bet(cid, "alice", TOKEN_A.address, "0.5")

        assert await manager.cancel(cid, "token delisted") is True

        cancelled = store.competitions[cid]
        assert cancelled.status == CompetitionStatus.CANCELLED
        assert cancelled.resolution_note == "token delisted"
        assert store.payouts[cid][0].claimed_status == "refunded"
        assert manager.get(cid) is None
        assert sampler.tracked == frozenset()
        assert phase_timers(scheduler) == []

    @pytest.mark.asyncio
    async def test_cancel_terminal_or_unknown_is_rejected(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
    ) -> None:
        store.seed(make_competition("comp-done", status=CompetitionStatus.RESOLVED))

        assert await manager.cancel("comp-done") is False
        assert await manager.cancel("nope") is False

    @pytest.mark.asyncio
    async def test_pause_stops_driving_the_competition(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        scheduler: SimulatedScheduler,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id

        assert await manager.pause(cid) is True
        await scheduler.advance_to(T0 + timedelta(hours=2))

        assert store.status_history[cid] == [CompetitionStatus.SETUP, CompetitionStatus.PAUSED]
        assert manager.get(cid) is None
        assert store.payouts == {}

    @pytest.mark.asyncio
    async def test_failed_pause_restores_timer(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        pair: TokenPair,
    ) -> None:
        competition = await manager.create_manual(make_config(pair))
        cid = competition.competition_id
        store.fail_updates = 1

        assert await manager.pause(cid) is False

        assert manager.get(cid).status == CompetitionStatus.SETUP
        assert manager.pending_timer(cid).target_phase == CompetitionStatus.VOTING


# ============================================================================
# Creation
# ============================================================================


class TestCreation:
    """Tests for manual and automated creation."""

    @pytest.mark.asyncio
    async def test_same_token_twice_is_rejected(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
    ) -> None:
        pair = TokenPair(pair_id="dup", token_a=TOKEN_A, token_b=TOKEN_A)

        with pytest.raises(CompetitionValidationError):
            await manager.create_manual(make_config(pair))
        assert store.competitions == {}

    @pytest.mark.asyncio
    async def test_non_positive_duration_is_rejected(
        self, manager: CompetitionManager, pair: TokenPair
    ) -> None:
        with pytest.raises(CompetitionValidationError):
            await manager.create_manual(make_config(pair, voting=timedelta(0)))

    @pytest.mark.asyncio
    async def test_insert_failure_raises_creation_error(
        self,
        manager: CompetitionManager,
        store: FakeCompetitionStore,
        pair: TokenPair,
    ) -> None:
        store.fail_inserts = True

        with pytest.raises(CompetitionCreationError):
            await manager.create_manual(make_config(pair))
        assert manager.competitions() == []

    @pytest.mark.asyncio
    async def test_created_by_is_recorded(
        self,
        manager: CompetitionManager,
        pair: TokenPair,
    ) -> None:
        manual = await manager.create_manual(make_config(pair))
        automated = await manager.create_automated(make_config(pair))

        assert manual.created_by == "manual"
        assert automated.created_by == "automated"
        assert manager.active_count() == 2
        assert manager.open_token_pairs() == {frozenset((TOKEN_A.address, TOKEN_B.address))}
