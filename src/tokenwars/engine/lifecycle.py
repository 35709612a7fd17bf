"""Competition phase state machine.

A competition moves SETUP -> VOTING -> ACTIVE -> CLOSED -> RESOLVED purely on
elapsed time: ``start_time`` opens voting, ``voting_end_time`` starts the
active phase and ``end_time`` closes it. CLOSED is resolved immediately.
CANCELLED and PAUSED are external escape states.

The manager owns the only in-memory copy of each open competition and at
most one pending ``PhaseTimer`` per competition. Every change is persisted
before the in-memory copy is updated; a failed write is retried later through
the same timer slot.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Protocol

from tokenwars.engine.pairs import CompetitionValidationError, validate_pair
from tokenwars.engine.resolution import (
    ResolutionOutcome,
    calculate_payouts,
    decide_winner,
    refund_all,
    twap_windows,
)
from tokenwars.events import EventBus
from tokenwars.models import (
    OPEN_STATUSES,
    RECOVERABLE_STATUSES,
    Bet,
    Competition,
    CompetitionConfig,
    CompetitionDataError,
    CompetitionDraft,
    CompetitionStatus,
    EventType,
    Payout,
    PhaseTimer,
    PriceSample,
    TokenPair,
)
from tokenwars.prices.sampler import PriceSampler
from tokenwars.scheduler import Scheduler

logger = logging.getLogger(__name__)

DEFAULT_TWAP_WINDOW = timedelta(minutes=10)
DEFAULT_TRANSITION_RETRY = timedelta(seconds=30)


class CompetitionCreationError(Exception):
    """Raised when a new competition could not be persisted."""


class CompetitionStore(Protocol):
    """Persistence operations the state machine depends on."""

    async def list_competitions(
        self, statuses: Iterable[CompetitionStatus]
    ) -> Sequence[Competition | CompetitionDataError]: ...

    async def get_competition(self, competition_id: str) -> Competition | None: ...

    async def insert_competition(self, draft: CompetitionDraft) -> Competition: ...

    async def update_competition_status(
        self,
        competition_id: str,
        status: CompetitionStatus,
        extra_fields: dict[str, Any] | None = None,
        *,
        expected_status: CompetitionStatus | None = None,
    ) -> Competition | None: ...

    async def list_token_pairs(self, *, active_only: bool = True) -> list[TokenPair]: ...

    async def mark_token_pair_used(self, pair_id: str, when: datetime) -> None: ...

    async def list_bets(self, competition_id: str) -> list[Bet]: ...

    async def record_payouts(self, competition_id: str, payouts: Sequence[Payout]) -> int: ...

    async def ping(self) -> bool: ...


@dataclass(frozen=True)
class LifecycleConfig:
    twap_window: timedelta = DEFAULT_TWAP_WINDOW
    transition_retry: timedelta = DEFAULT_TRANSITION_RETRY


def build_draft(config: CompetitionConfig, now: datetime, *, created_by: str) -> CompetitionDraft:
    """Validate ``config`` and lay out the phase boundaries starting at ``now``.

    Raises:
        CompetitionValidationError: If the pair or durations are invalid.
    """
    validate_pair(config.pair)
    if config.voting_duration <= timedelta(0) or config.active_duration <= timedelta(0):
        raise CompetitionValidationError("voting and active durations must be positive")
    if config.start_delay < timedelta(0):
        raise CompetitionValidationError("start delay cannot be negative")

    start_time = now + config.start_delay
    voting_end_time = start_time + config.voting_duration
    return CompetitionDraft(
        token_a=config.pair.token_a,
        token_b=config.pair.token_b,
        start_time=start_time,
        voting_end_time=voting_end_time,
        end_time=voting_end_time + config.active_duration,
        bet_amount=config.bet_amount,
        platform_fee_percentage=config.platform_fee_percentage,
        created_by=created_by,
    )


@dataclass
class ManagerStats:
    """Snapshot of the manager's in-memory state."""

    by_status: dict[str, int] = field(default_factory=dict)
    pending_timers: int = 0
    tracked_tokens: int = 0
    transitions: int = 0
    resolved: int = 0
    voided: int = 0
    failed_operations: int = 0
    pending_settlements: int = 0


class CompetitionManager:
    """Drives competitions through their phases.

    Example:
        ```python
        manager = CompetitionManager(store, sampler, scheduler, events)
        await manager.load_and_recover()
        competition = await manager.create_manual(config)
        ```
    """

    def __init__(
        self,
        repository: CompetitionStore,
        sampler: PriceSampler,
        scheduler: Scheduler,
        events: EventBus,
        *,
        config: LifecycleConfig | None = None,
    ) -> None:
        self._repo = repository
        self._sampler = sampler
        self._scheduler = scheduler
        self._events = events
        self._config = config or LifecycleConfig()

        self._competitions: dict[str, Competition] = {}
        self._timers: dict[str, PhaseTimer] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._resolving: set[str] = set()
        # Finished competitions whose payouts still need writing, by winner.
        self._unsettled: dict[str, str | None] = {}
        self._recovering = False
        self._counters: Counter[str] = Counter()

    # Queries

    def get(self, competition_id: str) -> Competition | None:
        return self._competitions.get(competition_id)

    def competitions(self) -> list[Competition]:
        return list(self._competitions.values())

    def active_count(self) -> int:
        """Competitions in SETUP, VOTING or ACTIVE."""
        return sum(1 for c in self._competitions.values() if c.status in OPEN_STATUSES)

    def pending_timer(self, competition_id: str) -> PhaseTimer | None:
        return self._timers.get(competition_id)

    def open_token_pairs(self) -> set[frozenset[str]]:
        return {frozenset(c.token_addresses) for c in self._competitions.values() if c.status in OPEN_STATUSES}

    def stats(self) -> ManagerStats:
        by_status = Counter(c.status.value for c in self._competitions.values())
        return ManagerStats(
            by_status=dict(by_status),
            pending_timers=len(self._timers),
            tracked_tokens=len(self._sampler.tracked),
            transitions=self._counters["transitions"],
            resolved=self._counters["resolved"],
            voided=self._counters["voided"],
            failed_operations=self._counters["failed"],
            pending_settlements=len(self._unsettled),
        )

    # Recovery

    async def load_and_recover(self) -> bool:
        """Load unfinished competitions and bring each up to date.

        Returns False without touching state if a recovery is already running
        or the competitions could not be listed.
        """
        if self._recovering:
            logger.debug("Recovery already in progress; skipping")
            return False
        self._recovering = True
        try:
            try:
                records = await self._repo.list_competitions(RECOVERABLE_STATUSES)
            except Exception as e:
                logger.error("Failed to list competitions for recovery: %s", e)
                await self._report_error(None, "load_and_recover", e)
                return False

            seen: set[str] = set()
            loaded = 0
            for record in records:
                if isinstance(record, CompetitionDataError):
                    logger.warning("Skipping corrupt competition record: %s", record)
                    continue
                seen.add(record.competition_id)
                try:
                    record.validate()
                except CompetitionDataError as e:
                    logger.warning("Skipping corrupt competition record: %s", e)
                    continue
                if self._refresh(record):
                    loaded += 1
                    await self._evaluate(record.competition_id)

            # Known competitions missing from the listing may have been cancelled
            # or paused outside this process.
            for competition_id in [c for c in self._competitions if c not in seen]:
                if competition_id not in self._resolving and competition_id not in self._unsettled:
                    await self._reload(competition_id)

            logger.info("Recovered %d competition(s), %d timer(s) pending", loaded, len(self._timers))
            return True
        finally:
            self._recovering = False

    def _refresh(self, record: Competition) -> bool:
        """Store ``record`` in memory; returns True if it needs evaluating."""
        competition_id = record.competition_id
        known = competition_id in self._competitions
        if not known:
            self._sampler.pin(record.token_addresses)
        current = self._competitions.get(competition_id)
        if current is not None and record.status.precedes(current.status):
            # Never let a stale read move the in-memory copy backwards.
            return False
        self._competitions[competition_id] = record
        if record.status == CompetitionStatus.ACTIVE:
            self._sampler.start_tracking(record.token_addresses)

        timer = self._timers.get(competition_id)
        upcoming = record.next_transition()
        if known and timer is not None and upcoming is not None and timer.target_phase == upcoming[0]:
            return False
        return True

    # Transitions

    async def advance_phase(self, competition_id: str) -> bool:
        """Move a competition to its next phase now.

        Returns False if the competition is unknown, has no successor or the
        transition could not be persisted (a retry is then scheduled).
        """
        competition = self._competitions.get(competition_id)
        if competition is None:
            return False
        if competition.status == CompetitionStatus.CLOSED:
            return await self.resolve(competition_id)
        target = competition.status.successor()
        if target is None:
            return False
        advanced = await self._transition(competition_id, target)
        if advanced:
            await self._evaluate(competition_id)
        return advanced

    async def _evaluate(self, competition_id: str) -> None:
        """Apply every transition already due, then schedule the next one."""
        while True:
            competition = self._competitions.get(competition_id)
            if competition is None:
                return
            if competition.status == CompetitionStatus.CLOSED:
                await self.resolve(competition_id)
                return
            upcoming = competition.next_transition()
            if upcoming is None:
                return
            target, fire_at = upcoming
            if self._scheduler.now() < fire_at:
                self._schedule(competition_id, target, fire_at)
                return
            if not await self._transition(competition_id, target):
                return

    def _lock(self, competition_id: str) -> asyncio.Lock:
        lock = self._locks.get(competition_id)
        if lock is None:
            lock = self._locks[competition_id] = asyncio.Lock()
        return lock

    async def _transition(self, competition_id: str, target: CompetitionStatus) -> bool:
        async with self._lock(competition_id):
            competition = self._competitions.get(competition_id)
            if competition is None or not competition.status.precedes(target):
                return False
            previous = competition.status
            try:
                updated = await self._repo.update_competition_status(
                    competition_id, target, {}, expected_status=previous
                )
            except Exception as e:
                self._counters["failed"] += 1
                logger.warning(
                    "Failed to persist %s -> %s for %s: %s", previous.value, target.value, competition_id, e
                )
                self._schedule_retry(competition_id, target)
                await self._report_error(competition_id, "advance_phase", e)
                return False

            if updated is None:
                return await self._reload(competition_id)

            self._competitions[competition_id] = updated
            self._counters["transitions"] += 1

        logger.info("Competition %s: %s -> %s", competition_id, previous.value, target.value)
        if target == CompetitionStatus.ACTIVE:
            self._sampler.start_tracking(updated.token_addresses)
            if updated.end_time is not None and self._scheduler.now() < updated.end_time:
                await self._sampler.sample_now(updated.token_addresses)
        elif target == CompetitionStatus.CLOSED:
            self._stop_sampling(competition_id)

        await self._events.emit(
            EventType.PHASE_CHANGED,
            competition_id,
            from_status=previous.value,
            to_status=target.value,
        )
        return True

    async def _reload(self, competition_id: str) -> bool:
        """Re-read a competition whose row changed underneath us."""
        try:
            fresh = await self._repo.get_competition(competition_id)
        except Exception as e:
            logger.warning("Failed to reload competition %s: %s", competition_id, e)
            return False
        if fresh is None or fresh.status not in RECOVERABLE_STATUSES:
            logger.info("Competition %s was closed externally; releasing", competition_id)
            self._release(competition_id)
            return False
        current = self._competitions.get(competition_id)
        if current is not None and not current.status.precedes(fresh.status):
            return False
        self._competitions[competition_id] = fresh
        if fresh.status == CompetitionStatus.ACTIVE:
            self._sampler.start_tracking(fresh.token_addresses)
        return True

    # Timers

    def _schedule(self, competition_id: str, target: CompetitionStatus, fire_at: datetime) -> None:
        self._cancel_timer(competition_id)
        timer = PhaseTimer(competition_id=competition_id, target_phase=target, fire_at=fire_at)
        timer.handle = self._scheduler.schedule_at(fire_at, partial(self._on_timer, timer))
        self._timers[competition_id] = timer
        logger.debug("Scheduled %s -> %s at %s", competition_id, target.value, fire_at.isoformat())

    def _schedule_retry(self, competition_id: str, target: CompetitionStatus) -> None:
        if competition_id in self._competitions:
            self._schedule(competition_id, target, self._scheduler.now() + self._config.transition_retry)

    def _cancel_timer(self, competition_id: str) -> None:
        timer = self._timers.pop(competition_id, None)
        if timer is not None:
            timer.cancel()

    async def _on_timer(self, timer: PhaseTimer) -> None:
        if self._timers.get(timer.competition_id) is not timer:
            return
        del self._timers[timer.competition_id]
        competition = self._competitions.get(timer.competition_id)
        if competition is None:
            return
        if timer.competition_id in self._unsettled:
            await self._retry_settlement(timer.competition_id)
        elif competition.status.successor() == timer.target_phase:
            await self.advance_phase(timer.competition_id)
        else:
            await self._evaluate(timer.competition_id)

    # Resolution

    async def resolve(self, competition_id: str) -> bool:
        """Decide the winner of a CLOSED competition and settle bets.

        Ties, missing price data and non-positive start prices void the
        competition instead (CANCELLED with every stake refunded).
        """
        competition = self._competitions.get(competition_id)
        if competition is None or competition.status != CompetitionStatus.CLOSED:
            return False
        if competition_id in self._resolving:
            return False
        self._resolving.add(competition_id)
        try:
            self._cancel_timer(competition_id)
            try:
                samples_a, samples_b = await self._load_resolution_samples(competition)
            except CompetitionDataError as e:
                logger.warning("Cannot resolve %s: %s", competition_id, e)
                return await self._void(competition, f"invalid competition data: {e}")
            except Exception as e:
                self._counters["failed"] += 1
                logger.warning("Failed to load samples for %s: %s", competition_id, e)
                self._schedule_retry(competition_id, CompetitionStatus.RESOLVED)
                await self._report_error(competition_id, "resolve", e)
                return False

            outcome = decide_winner(competition, samples_a, samples_b, self._config.twap_window)
            if outcome.is_void:
                return await self._void(competition, outcome.void_reason or "void", outcome)
            return await self._finalize(competition, outcome)
        finally:
            self._resolving.discard(competition_id)

    async def _load_resolution_samples(
        self, competition: Competition
    ) -> tuple[list[PriceSample], list[PriceSample]]:
        windows = twap_windows(competition, self._config.twap_window)
        start, end = windows.start_window[0], windows.end_window[1]
        samples_a = await self._sampler.get_samples(competition.token_a.address, start, end)
        samples_b = await self._sampler.get_samples(competition.token_b.address, start, end)
        return samples_a, samples_b

    async def _finalize(self, competition: Competition, outcome: ResolutionOutcome) -> bool:
        competition_id = competition.competition_id
        fields: dict[str, Any] = dict(outcome.persisted_fields())
        fields["winner_token"] = outcome.winner_token
        fields["resolved_at"] = self._scheduler.now()
        try:
            updated = await self._repo.update_competition_status(
                competition_id,
                CompetitionStatus.RESOLVED,
                fields,
                expected_status=CompetitionStatus.CLOSED,
            )
        except Exception as e:
            self._counters["failed"] += 1
            logger.warning("Failed to persist resolution of %s: %s", competition_id, e)
            self._schedule_retry(competition_id, CompetitionStatus.RESOLVED)
            await self._report_error(competition_id, "resolve", e)
            return False
        if updated is None:
            await self._reload(competition_id)
            return False

        self._competitions[competition_id] = updated
        self._counters["resolved"] += 1
        winner = updated.token_for(outcome.winner_token or "")
        logger.info(
            "Competition %s resolved: winner %s (%s vs %s)",
            competition_id,
            winner.symbol if winner else outcome.winner_token,
            outcome.token_a_performance,
            outcome.token_b_performance,
        )
        settled = await self._settle(updated, outcome.winner_token)
        await self._events.emit(
            EventType.PHASE_CHANGED,
            competition_id,
            from_status=CompetitionStatus.CLOSED.value,
            to_status=CompetitionStatus.RESOLVED.value,
        )
        await self._events.emit(
            EventType.RESOLVED,
            competition_id,
            winner_token=outcome.winner_token,
            winner_symbol=winner.symbol if winner else None,
            token_a_symbol=updated.token_a.symbol,
            token_b_symbol=updated.token_b.symbol,
            token_a_performance=str(outcome.token_a_performance),
            token_b_performance=str(outcome.token_b_performance),
        )
        self._release_when_settled(competition_id, outcome.winner_token, settled)
        return True

    async def _void(
        self,
        competition: Competition,
        reason: str,
        outcome: ResolutionOutcome | None = None,
    ) -> bool:
        competition_id = competition.competition_id
        fields: dict[str, Any] = dict(outcome.persisted_fields()) if outcome else {}
        fields["resolution_note"] = reason
        fields["winner_token"] = None
        try:
            updated = await self._repo.update_competition_status(
                competition_id,
                CompetitionStatus.CANCELLED,
                fields,
                expected_status=competition.status,
            )
        except Exception as e:
            self._counters["failed"] += 1
            logger.warning("Failed to void competition %s: %s", competition_id, e)
            self._schedule_retry(competition_id, CompetitionStatus.RESOLVED)
            await self._report_error(competition_id, "void", e)
            return False
        if updated is None:
            await self._reload(competition_id)
            return False

        self._competitions[competition_id] = updated
        self._counters["voided"] += 1
        logger.warning("Competition %s voided: %s", competition_id, reason)
        settled = await self._settle(updated, None)
        await self._events.emit(
            EventType.PHASE_CHANGED,
            competition_id,
            from_status=competition.status.value,
            to_status=CompetitionStatus.CANCELLED.value,
            reason=reason,
        )
        self._release_when_settled(competition_id, None, settled)
        return True

    async def _settle(self, competition: Competition, winner_token: str | None) -> bool:
        """Write payout (or refund) amounts for every bet.

        Returns False if the bookkeeping failed and must be retried.
        """
        competition_id = competition.competition_id
        try:
            bets = await self._repo.list_bets(competition_id)
            if winner_token is None:
                payouts = refund_all(bets)
            else:
                payouts = calculate_payouts(bets, winner_token, competition.platform_fee_percentage)
            if payouts:
                await self._repo.record_payouts(competition_id, payouts)
                logger.info("Recorded %d payout(s) for %s", len(payouts), competition_id)
        except Exception as e:
            self._counters["failed"] += 1
            logger.error("Payout bookkeeping failed for %s: %s", competition_id, e)
            await self._report_error(competition_id, "payouts", e)
            return False
        return True

    def _release_when_settled(self, competition_id: str, winner_token: str | None, settled: bool) -> None:
        if settled:
            self._release(competition_id)
            return
        # Kept in memory until the payout write succeeds.
        self._unsettled[competition_id] = winner_token
        self._stop_sampling(competition_id)
        self._schedule_retry(competition_id, self._competitions[competition_id].status)

    async def _retry_settlement(self, competition_id: str) -> None:
        competition = self._competitions.get(competition_id)
        if competition is None:
            self._unsettled.pop(competition_id, None)
            return
        if await self._settle(competition, self._unsettled[competition_id]):
            logger.info("Payouts for %s recorded on retry", competition_id)
            self._release(competition_id)
        else:
            self._schedule_retry(competition_id, competition.status)

    # Escape states

    async def cancel(self, competition_id: str, reason: str = "cancelled by operator") -> bool:
        """Cancel an unfinished competition and refund all stakes."""
        competition = await self._load_for_escape(competition_id)
        if competition is None:
            return False
        if competition_id not in self._competitions:
            self._refresh(competition)
        self._cancel_timer(competition_id)
        return await self._void(competition, reason)

    async def pause(self, competition_id: str) -> bool:
        """Stop driving a competition without settling it."""
        competition = await self._load_for_escape(competition_id)
        if competition is None:
            return False
        self._cancel_timer(competition_id)
        try:
            updated = await self._repo.update_competition_status(
                competition_id, CompetitionStatus.PAUSED, {}, expected_status=competition.status
            )
        except Exception as e:
            logger.warning("Failed to pause competition %s: %s", competition_id, e)
            await self._report_error(competition_id, "pause", e)
            updated = None
        if updated is None:
            if competition_id in self._competitions:
                await self._reload(competition_id)
            # Restore the timer we cancelled above.
            if competition_id in self._competitions:
                await self._evaluate(competition_id)
            return False
        self._competitions[competition_id] = updated
        await self._events.emit(
            EventType.PHASE_CHANGED,
            competition_id,
            from_status=competition.status.value,
            to_status=CompetitionStatus.PAUSED.value,
        )
        self._release(competition_id)
        return True

    async def _load_for_escape(self, competition_id: str) -> Competition | None:
        competition = self._competitions.get(competition_id)
        if competition is None:
            try:
                competition = await self._repo.get_competition(competition_id)
            except Exception as e:
                logger.warning("Failed to load competition %s: %s", competition_id, e)
                return None
        if competition is None or competition.status.is_terminal:
            return None
        return competition

    # Creation

    async def create_manual(self, config: CompetitionConfig) -> Competition:
        """Create a competition from an operator request.

        Raises:
            CompetitionValidationError: If the pair or durations are invalid.
            CompetitionCreationError: If the competition could not be persisted.
        """
        return await self._create(config, created_by="manual")

    async def create_automated(self, config: CompetitionConfig) -> Competition:
        """Create a competition on behalf of the automation policy.

        Raises:
            CompetitionValidationError: If the pair or durations are invalid.
            CompetitionCreationError: If the competition could not be persisted.
        """
        return await self._create(config, created_by="automated")

    async def _create(self, config: CompetitionConfig, *, created_by: str) -> Competition:
        draft = build_draft(config, self._scheduler.now(), created_by=created_by)
        try:
            competition = await self._repo.insert_competition(draft)
        except Exception as e:
            logger.error("Failed to create competition %s vs %s: %s", draft.token_a.symbol, draft.token_b.symbol, e)
            raise CompetitionCreationError(f"failed to persist competition: {e}") from e

        logger.info(
            "Created %s competition %s: %s vs %s (voting %s, end %s)",
            created_by,
            competition.competition_id,
            competition.token_a.symbol,
            competition.token_b.symbol,
            draft.start_time.isoformat(),
            draft.end_time.isoformat(),
        )
        self._refresh(competition)
        await self._evaluate(competition.competition_id)
        return self._competitions.get(competition.competition_id, competition)

    # Teardown

    def _stop_sampling(self, competition_id: str) -> None:
        """Stop sampling tokens no other ACTIVE competition still needs."""
        competition = self._competitions.get(competition_id)
        if competition is None:
            return
        still_needed = {
            address
            for other_id, other in self._competitions.items()
            if other_id != competition_id and other.status == CompetitionStatus.ACTIVE
            for address in other.token_addresses
        }
        self._sampler.stop_tracking(set(competition.token_addresses) - still_needed)

    def _release(self, competition_id: str) -> None:
        self._cancel_timer(competition_id)
        self._unsettled.pop(competition_id, None)
        self._stop_sampling(competition_id)
        competition = self._competitions.pop(competition_id, None)
        if competition is not None:
            self._sampler.unpin(competition.token_addresses)
        self._locks.pop(competition_id, None)

    async def _report_error(self, competition_id: str | None, operation: str, error: Exception) -> None:
        await self._events.emit(EventType.ERROR, competition_id, operation=operation, error=str(error))

    def shutdown(self) -> None:
        """Cancel every pending timer."""
        for competition_id in list(self._timers):
            self._cancel_timer(competition_id)
        logger.info("Competition manager shut down (%d competition(s) in memory)", len(self._competitions))
