"""Process host for the competition engine.

This module provides the TokenWarsService class that wires the price
sampler, the competition state machine, automation and operator alerts
together and manages their lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from tokenwars.alerter import AlertDispatcher, AlertFormatter, LogAlertChannel, OperatorAlerter
from tokenwars.config import Settings, get_settings
from tokenwars.engine.automation import AutomationPolicy, AutomationRunner
from tokenwars.engine.lifecycle import CompetitionManager, CompetitionStore, LifecycleConfig
from tokenwars.engine.pairs import CompetitionValidationError, PairSelector
from tokenwars.events import EventBus
from tokenwars.models import Competition, CompetitionConfig
from tokenwars.prices.cache import LatestPriceCache
from tokenwars.prices.client import EdgePriceClient, PriceSource
from tokenwars.prices.sampler import PriceSampler
from tokenwars.prices.store import SampleStore
from tokenwars.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from tokenwars.storage.database import DatabaseManager
from tokenwars.storage.store import SqlCompetitionStore, SqlPriceSampleStore

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_INTERVAL = timedelta(seconds=30)
STARTUP_POLL_INTERVAL_SECONDS = 0.5


class ServiceState(str, Enum):
    """State of the service."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    resyncs: int = 0
    failed_resyncs: int = 0
    last_error: str | None = None


class TokenWarsService:
    """Owns every engine component for one process.

    Collaborators can be injected (tests, embedding in another host);
    anything not supplied is built from settings in ``start()``.

    Example:
        ```python
        from tokenwars.config import get_settings
        from tokenwars.service import TokenWarsService

        async with TokenWarsService(get_settings()) as service:
            competition = await service.create_competition("pair-id")
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        scheduler: Scheduler | None = None,
        store: CompetitionStore | None = None,
        sample_store: SampleStore | None = None,
        price_source: PriceSource | None = None,
        cache: LatestPriceCache | None = None,
        resync_interval: timedelta = DEFAULT_RESYNC_INTERVAL,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, skip delivering operator alerts. Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._resync_interval = resync_interval

        self._scheduler: Scheduler = scheduler or AsyncioScheduler()
        self._store = store
        self._sample_store = sample_store
        self._price_source = price_source
        self._cache = cache

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._owned_price_client: EdgePriceClient | None = None
        self.events = EventBus()
        self._sampler: PriceSampler | None = None
        self._manager: CompetitionManager | None = None
        self._automation: AutomationRunner | None = None
        self._alerter: OperatorAlerter | None = None
        self._resync_handle: TimerHandle | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def stats(self) -> ServiceStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state in (ServiceState.RUNNING, ServiceState.DEGRADED)

    @property
    def manager(self) -> CompetitionManager:
        if self._manager is None:
            raise RuntimeError("service has not been started")
        return self._manager

    @property
    def automation(self) -> AutomationRunner:
        if self._automation is None:
            raise RuntimeError("service has not been started")
        return self._automation

    @property
    def sampler(self) -> PriceSampler:
        if self._sampler is None:
            raise RuntimeError("service has not been started")
        return self._sampler

    async def start(self) -> None:
        """Start the service.

        Builds the components, waits (bounded) for the database, recovers
        unfinished competitions and starts the periodic work. If the database
        is unreachable the service runs degraded: nothing is loaded and
        automation is disabled.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If a component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting TokenWars service...")

        try:
            self._initialize_components()
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start service: %s", e)
            await self._cleanup()
            raise

        if await self._wait_for_repository():
            await self.manager.load_and_recover()
            self._state = ServiceState.RUNNING
        else:
            self.automation.policy.disable("repository unavailable at startup")
            self._stats.last_error = "repository unavailable at startup"
            self._state = ServiceState.DEGRADED
            logger.error(
                "Database not reachable within %.1fs; running degraded with automation disabled",
                self._settings.startup_timeout_seconds,
            )

        await self.sampler.start()
        self.automation.start()
        self._schedule_resync()
        self._stats.started_at = datetime.now(UTC)
        logger.info("TokenWars service started (%s)", self._state.value)

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping TokenWars service...")

        if self._stop_event:
            self._stop_event.set()
        if self._resync_handle is not None:
            self._resync_handle.cancel()
            self._resync_handle = None
        if self._automation:
            self._automation.stop()
        if self._manager:
            self._manager.shutdown()
        if self._sampler:
            await self._sampler.stop()
        if self._alerter:
            self._alerter.detach()
        await self._cleanup()

        self._state = ServiceState.STOPPED
        logger.info("TokenWars service stopped")

    def _initialize_components(self) -> None:
        settings = self._settings

        if self._store is None or self._sample_store is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager.from_settings(settings.database)
            if self._store is None:
                self._store = SqlCompetitionStore(self._db_manager.get_async_session)
            if self._sample_store is None:
                self._sample_store = SqlPriceSampleStore(self._db_manager.get_async_session)

        if self._price_source is None:
            logger.debug("Initializing price client...")
            anon_key = settings.price_source.anon_key
            self._owned_price_client = EdgePriceClient(
                base_url=settings.price_source.base_url,
                anon_key=anon_key.get_secret_value() if anon_key else None,
                timeout_seconds=settings.price_source.timeout_seconds,
                max_retries=settings.price_source.max_retries,
                requests_per_second=settings.price_source.requests_per_second,
            )
            self._price_source = self._owned_price_client

        if self._cache is None:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)
            self._cache = LatestPriceCache(self._redis, ttl_seconds=settings.redis.price_ttl_seconds)

        logger.debug("Initializing price sampler...")
        self._sampler = PriceSampler(
            self._price_source,
            self._scheduler,
            store=self._sample_store,
            cache=self._cache,
            active_interval_seconds=settings.sampler.active_interval_seconds,
            background_interval_seconds=settings.sampler.background_interval_seconds,
            retention_hours=settings.sampler.retention_hours,
        )

        logger.debug("Initializing competition manager...")
        self._manager = CompetitionManager(
            self._store,
            self._sampler,
            self._scheduler,
            self.events,
            config=LifecycleConfig(
                twap_window=timedelta(minutes=settings.competition.twap_window_minutes),
                transition_retry=timedelta(seconds=settings.competition.transition_retry_seconds),
            ),
        )

        logger.debug("Initializing automation...")
        store = self._store
        selector = PairSelector(
            lambda: store.list_token_pairs(active_only=True),
            self._sampler.latest_quotes,
            market_cap_tolerance=settings.competition.market_cap_tolerance,
        )
        self._automation = AutomationRunner(
            AutomationPolicy.from_settings(settings.automation),
            self._manager,
            selector,
            self._scheduler,
            self.events,
            mark_pair_used=store.mark_token_pair_used,
            bet_amount=settings.competition.bet_amount,
            platform_fee_percentage=settings.competition.platform_fee_percentage,
            tick_interval=timedelta(seconds=settings.automation.tick_seconds),
        )

        logger.debug("Initializing alerting...")
        self._alerter = OperatorAlerter(
            AlertFormatter(verbosity="detailed"),
            AlertDispatcher([LogAlertChannel()]),
            dry_run=self._dry_run,
        )
        self._alerter.attach(self.events)

    async def _wait_for_repository(self) -> bool:
        """Poll the repository until it answers or the startup timeout passes."""
        if self._store is None:
            raise RuntimeError("service has not been started")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.startup_timeout_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                remaining = max(0.01, deadline - loop.time())
                if await asyncio.wait_for(self._store.ping(), timeout=remaining):
                    logger.debug("Repository reachable after %d attempt(s)", attempt)
                    return True
            except Exception as e:
                logger.debug("Repository not ready (attempt %d): %s", attempt, e)
            if loop.time() + STARTUP_POLL_INTERVAL_SECONDS > deadline:
                return False
            await asyncio.sleep(STARTUP_POLL_INTERVAL_SECONDS)

    def _schedule_resync(self) -> None:
        self._resync_handle = self._scheduler.schedule_at(
            self._scheduler.now() + self._resync_interval, self._resync
        )

    async def _resync(self) -> None:
        """Periodic reconciliation with the database."""
        try:
            if self._manager is not None and await self._manager.load_and_recover():
                self._stats.resyncs += 1
                if self._state == ServiceState.DEGRADED:
                    self._state = ServiceState.RUNNING
                    logger.info("Repository reachable again; leaving degraded mode")
            else:
                self._stats.failed_resyncs += 1
        except Exception as e:
            self._stats.failed_resyncs += 1
            self._stats.last_error = str(e)
            logger.error("Resync failed: %s", e)
        finally:
            if self.is_running:
                self._schedule_resync()

    async def create_competition(self, pair_id: str) -> Competition:
        """Create a manual competition from a stored token pair.

        Raises:
            CompetitionValidationError: If the pair does not exist or is invalid.
            CompetitionCreationError: If the competition could not be persisted.
        """
        if self._store is None:
            raise RuntimeError("service has not been started")
        pairs = await self._store.list_token_pairs(active_only=False)
        pair = next((p for p in pairs if p.pair_id == pair_id), None)
        if pair is None:
            raise CompetitionValidationError(f"token pair {pair_id} not found")

        automation = self._settings.automation
        competition = self._settings.competition
        return await self.manager.create_manual(
            CompetitionConfig(
                pair=pair,
                start_delay=automation.start_delay,
                voting_duration=automation.voting_duration,
                active_duration=automation.active_duration,
                bet_amount=competition.bet_amount,
                platform_fee_percentage=competition.platform_fee_percentage,
            )
        )

    async def _cleanup(self) -> None:
        if self._owned_price_client is not None:
            await self._owned_price_client.close()
            self._owned_price_client = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._db_manager is not None:
            await self._db_manager.dispose_async()
            self._db_manager = None
        if isinstance(self._scheduler, AsyncioScheduler):
            await self._scheduler.close()

    async def run(self) -> None:
        """Start the service and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> TokenWarsService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
