"""Automated competition creation with a failure circuit breaker."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from tokenwars.config import AutomationSettings
from tokenwars.engine.lifecycle import CompetitionCreationError, CompetitionManager
from tokenwars.engine.pairs import CompetitionValidationError, PairSelector
from tokenwars.events import EventBus
from tokenwars.models import CompetitionConfig, EventType
from tokenwars.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_MAX_FAILURES = 5
DEFAULT_TICK_INTERVAL = timedelta(seconds=30)
DEFAULT_INITIAL_DELAY = timedelta(seconds=5)


@dataclass
class AutomationPolicy:
    """Whether, when and how to create competitions automatically.

    ``failure_count`` reaching ``max_failures`` disables the policy; only
    ``enable()`` turns it back on.
    """

    enabled: bool = True
    max_concurrent_competitions: int = 10
    auto_create_interval: timedelta = timedelta(hours=1)
    voting_duration: timedelta = timedelta(minutes=10)
    active_duration: timedelta = timedelta(hours=1)
    start_delay: timedelta = timedelta(minutes=5)
    max_failures: int = DEFAULT_MAX_FAILURES
    failure_count: int = 0
    last_competition_created: datetime | None = None
    disabled_reason: str | None = None

    @classmethod
    def from_settings(cls, settings: AutomationSettings) -> AutomationPolicy:
        return cls(
            enabled=settings.enabled,
            max_concurrent_competitions=settings.max_concurrent_competitions,
            auto_create_interval=settings.auto_create_interval,
            voting_duration=settings.voting_duration,
            active_duration=settings.active_duration,
            start_delay=settings.start_delay,
            max_failures=settings.max_failures,
        )

    def is_due(self, now: datetime, active_count: int) -> bool:
        if not self.enabled:
            return False
        if active_count >= self.max_concurrent_competitions:
            return False
        if self.last_competition_created is None:
            return True
        return now - self.last_competition_created >= self.auto_create_interval

    def record_success(self, now: datetime) -> None:
        self.failure_count = 0
        self.last_competition_created = now

    def record_failure(self, reason: str) -> bool:
        """Count a failure; returns True if this one tripped the breaker."""
        self.failure_count += 1
        if self.enabled and self.failure_count >= self.max_failures:
            self.disable(f"{self.failure_count} consecutive failures, last: {reason}")
            return True
        return False

    def disable(self, reason: str) -> None:
        self.enabled = False
        self.disabled_reason = reason

    def enable(self) -> None:
        """Operator action: re-arm automation and forget past failures."""
        self.enabled = True
        self.failure_count = 0
        self.disabled_reason = None


class AutomationRunner:
    """Evaluates the policy on a fixed tick and creates competitions."""

    def __init__(
        self,
        policy: AutomationPolicy,
        manager: CompetitionManager,
        selector: PairSelector,
        scheduler: Scheduler,
        events: EventBus,
        *,
        mark_pair_used: Callable[[str, datetime], Awaitable[None]] | None = None,
        bet_amount: Decimal = Decimal("0.1"),
        platform_fee_percentage: Decimal = Decimal("15"),
        tick_interval: timedelta = DEFAULT_TICK_INTERVAL,
        initial_delay: timedelta = DEFAULT_INITIAL_DELAY,
    ) -> None:
        self.policy = policy
        self._manager = manager
        self._selector = selector
        self._scheduler = scheduler
        self._events = events
        self._mark_pair_used = mark_pair_used
        self._bet_amount = bet_amount
        self._fee = platform_fee_percentage
        self._tick_interval = tick_interval
        self._initial_delay = initial_delay

        self._handle: TimerHandle | None = None
        self._running = False
        self.attempts = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._schedule(self._initial_delay)
        logger.info(
            "Automation started (enabled=%s, max_concurrent=%d)",
            self.policy.enabled,
            self.policy.max_concurrent_competitions,
        )

    def stop(self) -> None:
        self._running = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def enable(self) -> None:
        self.policy.enable()
        logger.info("Automation re-enabled by operator")

    def _schedule(self, delay: timedelta) -> None:
        if self._running:
            self._handle = self._scheduler.schedule_at(self._scheduler.now() + delay, self._tick)

    async def _tick(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error("Automation tick failed: %s", e)
        finally:
            self._schedule(self._tick_interval)

    async def run_once(self) -> bool:
        """Attempt one automated creation if the policy says it is due.

        Returns True if a competition was created.
        """
        now = self._scheduler.now()
        if not self.policy.is_due(now, self._manager.active_count()):
            return False

        self.attempts += 1
        try:
            pair = await self._selector.select(now, exclude=self._manager.open_token_pairs())
        except Exception as e:
            await self._fail(f"pair lookup failed: {e}")
            return False
        if pair is None:
            await self._fail("no eligible token pair")
            return False

        config = CompetitionConfig(
            pair=pair,
            start_delay=self.policy.start_delay,
            voting_duration=self.policy.voting_duration,
            active_duration=self.policy.active_duration,
            bet_amount=self._bet_amount,
            platform_fee_percentage=self._fee,
        )
        try:
            competition = await self._manager.create_automated(config)
        except (CompetitionValidationError, CompetitionCreationError) as e:
            await self._fail(str(e))
            return False

        self.policy.record_success(now)
        logger.info("Automated competition %s created from pair %s", competition.competition_id, pair.pair_id)
        if self._mark_pair_used is not None:
            try:
                await self._mark_pair_used(pair.pair_id, now)
            except Exception as e:
                logger.warning("Failed to mark pair %s as used: %s", pair.pair_id, e)
        return True

    async def _fail(self, reason: str) -> None:
        tripped = self.policy.record_failure(reason)
        logger.warning(
            "Automated creation failed (%d/%d): %s",
            self.policy.failure_count,
            self.policy.max_failures,
            reason,
        )
        if tripped:
            logger.error("Automation disabled: %s", self.policy.disabled_reason)
            await self._events.emit(
                EventType.AUTOMATION_DISABLED,
                None,
                reason=self.policy.disabled_reason,
                failure_count=self.policy.failure_count,
            )
