"""Periodic price sampling for tokens in competitions.

The sampler keeps two sets of tokens:

- *tracked* tokens belong to ACTIVE competitions and are sampled every
  ``active_interval_seconds`` so their TWAP windows are densely covered;
- *pinned* tokens belong to any unresolved competition. They are refreshed on
  the slower background tick and their history is exempt from pruning.

Ticks are scheduled through the ``Scheduler`` abstraction, one tick at a time:
the next tick is scheduled when the current one finishes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from tokenwars.models import PriceQuote, PriceSample
from tokenwars.prices.cache import LatestPriceCache
from tokenwars.prices.client import PriceSource, PriceSourceError
from tokenwars.prices.store import MemorySampleStore, SampleStore
from tokenwars.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_ACTIVE_INTERVAL_SECONDS = 5
DEFAULT_BACKGROUND_INTERVAL_SECONDS = 60
DEFAULT_RETENTION_HOURS = 24


class SamplerState(str, Enum):
    """State of the price sampler."""

    STOPPED = "stopped"
    IDLE = "idle"
    SAMPLING = "sampling"
    ERROR = "error"


@dataclass
class SamplerStats:
    """Statistics for the sampling process."""

    total_ticks: int = 0
    successful_fetches: int = 0
    failed_fetches: int = 0
    samples_stored: int = 0
    store_failures: int = 0
    samples_pruned: int = 0
    failed_tokens: int = 0
    last_tick_time: datetime | None = None
    last_error: str | None = None


StateCallback = Callable[[SamplerState], None]


class PriceSampler:
    """Samples token prices on a fixed cadence and stores them for TWAP.

    Example:
        ```python
        sampler = PriceSampler(price_client, scheduler, store=sample_store)
        await sampler.start()
        sampler.start_tracking(["So111...", "EPjF..."])
        samples = await sampler.get_samples("So111...", start, end)
        await sampler.stop()
        ```
    """

    def __init__(
        self,
        price_source: PriceSource,
        scheduler: Scheduler,
        *,
        store: SampleStore | None = None,
        cache: LatestPriceCache | None = None,
        active_interval_seconds: float = DEFAULT_ACTIVE_INTERVAL_SECONDS,
        background_interval_seconds: float = DEFAULT_BACKGROUND_INTERVAL_SECONDS,
        retention_hours: float = DEFAULT_RETENTION_HOURS,
        on_state_change: StateCallback | None = None,
    ) -> None:
        """Initialize the sampler.

        Args:
            price_source: Where current quotes come from.
            scheduler: Clock and timer used for ticks.
            store: Sample persistence (in-memory if omitted).
            cache: Optional Redis latest-price cache.
            active_interval_seconds: Interval for tracked tokens (default: 5).
            background_interval_seconds: Interval for pinned refresh and pruning (default: 60).
            retention_hours: Age after which unpinned samples are pruned (default: 24).
            on_state_change: Callback for state changes.
        """
        self._source = price_source
        self._scheduler = scheduler
        self._store: SampleStore = store if store is not None else MemorySampleStore()
        self._cache = cache
        self._active_interval = timedelta(seconds=active_interval_seconds)
        self._background_interval = timedelta(seconds=background_interval_seconds)
        self._retention = timedelta(hours=retention_hours)
        self._on_state_change = on_state_change

        self._tracked: set[str] = set()
        self._pins: Counter[str] = Counter()
        self._running = False
        self._active_handle: TimerHandle | None = None
        self._background_handle: TimerHandle | None = None
        self._tick_lock = asyncio.Lock()

        self._state = SamplerState.STOPPED
        self._stats = SamplerStats()

    @property
    def state(self) -> SamplerState:
        return self._state

    @property
    def stats(self) -> SamplerStats:
        return self._stats

    @property
    def tracked(self) -> frozenset[str]:
        return frozenset(self._tracked)

    @property
    def pinned(self) -> frozenset[str]:
        return frozenset(a for a, n in self._pins.items() if n > 0)

    @property
    def store(self) -> SampleStore:
        return self._store

    def _set_state(self, new_state: SamplerState) -> None:
        old_state = self._state
        self._state = new_state
        if self._on_state_change and old_state != new_state:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.warning("State change callback failed: %s", e)

    # Lifecycle

    async def start(self) -> None:
        if self._running:
            logger.warning("Cannot start sampler: already running")
            return
        self._running = True
        self._schedule_active()
        self._schedule_background()
        self._set_state(SamplerState.IDLE)
        logger.info(
            "Price sampler started (active=%ss, background=%ss)",
            self._active_interval.total_seconds(),
            self._background_interval.total_seconds(),
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for handle in (self._active_handle, self._background_handle):
            if handle is not None:
                handle.cancel()
        self._active_handle = None
        self._background_handle = None
        # Let an in-flight tick finish its writes.
        async with self._tick_lock:
            pass
        self._set_state(SamplerState.STOPPED)
        logger.info("Price sampler stopped")

    # Tracking

    def start_tracking(self, addresses: Iterable[str]) -> set[str]:
        """Add tokens to the active set; returns the ones that were new."""
        added = {a for a in addresses if a and a not in self._tracked}
        self._tracked.update(added)
        if added:
            logger.info("Tracking %d new token(s): %s", len(added), ", ".join(sorted(added)))
        return added

    def stop_tracking(self, addresses: Iterable[str]) -> set[str]:
        removed = {a for a in addresses if a in self._tracked}
        self._tracked.difference_update(removed)
        if removed:
            logger.info("Stopped tracking %d token(s)", len(removed))
        return removed

    def pin(self, addresses: Iterable[str]) -> None:
        """Protect tokens' history from pruning (reference counted)."""
        for address in addresses:
            if address:
                self._pins[address] += 1

    def unpin(self, addresses: Iterable[str]) -> None:
        for address in addresses:
            if self._pins.get(address, 0) <= 1:
                self._pins.pop(address, None)
            else:
                self._pins[address] -= 1

    # Sampling

    async def sample_now(self, addresses: Iterable[str] | None = None) -> list[PriceQuote]:
        """Fetch and store quotes for ``addresses`` (tracked tokens by default).

        If the batch request fails, each address is fetched on its own so one
        bad token cannot starve the others. Addresses that still fail, or
        that the source did not answer for, are left unsampled this tick.
        """
        targets = sorted(set(addresses) if addresses is not None else self._tracked)
        if not targets:
            return []

        async with self._tick_lock:
            self._set_state(SamplerState.SAMPLING)
            try:
                quotes = await self._source.fetch_current_prices(targets)
            except PriceSourceError as e:
                if len(targets) == 1:
                    self._record_fetch_failure(e, targets)
                    return []
                logger.warning("Batch price fetch failed, retrying per token: %s", e)
                quotes = await self._fetch_each(targets)
                if not quotes:
                    self._record_fetch_failure(e, targets)
                    return []
            except Exception as e:
                logger.exception("Unexpected price fetch failure")
                self._record_fetch_failure(e, targets)
                return []

            self._stats.successful_fetches += 1
            missing = set(targets) - {q.address for q in quotes}
            if missing:
                logger.debug("No price returned for %s", ", ".join(sorted(missing)))

            await self._persist([q.to_sample() for q in quotes])
            if self._cache is not None and quotes:
                try:
                    await self._cache.set_many(quotes)
                except Exception as e:
                    logger.warning("Failed to cache latest prices: %s", e)

            self._stats.last_error = None
            self._set_state(SamplerState.IDLE)
            return quotes

    async def _fetch_each(self, targets: Sequence[str]) -> list[PriceQuote]:
        quotes: list[PriceQuote] = []
        for address in targets:
            try:
                quotes.extend(await self._source.fetch_current_prices([address]))
            except PriceSourceError as e:
                self._stats.failed_tokens += 1
                logger.warning("Price fetch for %s failed: %s", address, e)
        return quotes

    def _record_fetch_failure(self, error: Exception, targets: Sequence[str]) -> None:
        self._stats.failed_fetches += 1
        self._stats.last_error = str(error)
        self._set_state(SamplerState.ERROR)
        logger.warning("Price fetch for %d token(s) failed: %s", len(targets), error)

    async def _persist(self, samples: list[PriceSample]) -> None:
        if not samples:
            return
        try:
            self._stats.samples_stored += await self._store.add_samples(samples)
            return
        except Exception as e:
            logger.warning("Batch sample write failed, retrying per token: %s", e)

        for sample in samples:
            try:
                self._stats.samples_stored += await self._store.add_samples([sample])
            except Exception as e:
                self._stats.store_failures += 1
                logger.warning("Failed to store sample for %s: %s", sample.token_address, e)

    async def get_samples(self, token_address: str, start: datetime, end: datetime) -> list[PriceSample]:
        return await self._store.get_samples(token_address, start, end)

    async def prune(self, now: datetime | None = None) -> int:
        """Delete samples older than the retention window except pinned tokens."""
        cutoff = (now or self._scheduler.now()) - self._retention
        try:
            removed = await self._store.prune_samples(cutoff, keep=self.pinned | self._tracked)
        except Exception as e:
            logger.warning("Sample pruning failed: %s", e)
            return 0
        self._stats.samples_pruned += removed
        if removed:
            logger.info("Pruned %d sample(s) older than %s", removed, cutoff.isoformat())
        return removed

    async def latest_quotes(self, addresses: Sequence[str]) -> dict[str, PriceQuote]:
        """Latest quote per address, cache first then the price source."""
        found: dict[str, PriceQuote] = {}
        if self._cache is not None:
            try:
                found = await self._cache.get_many(list(addresses))
            except Exception as e:
                logger.warning("Latest-price cache lookup failed: %s", e)
        missing = [a for a in addresses if a not in found]
        if missing:
            try:
                for quote in await self._source.fetch_current_prices(missing):
                    found[quote.address] = quote
            except PriceSourceError as e:
                logger.warning("Price lookup for %s failed: %s", ", ".join(missing), e)
        return found

    # Ticks

    def _schedule_active(self) -> None:
        if self._running:
            self._active_handle = self._scheduler.schedule_at(
                self._scheduler.now() + self._active_interval, self._active_tick
            )

    def _schedule_background(self) -> None:
        if self._running:
            self._background_handle = self._scheduler.schedule_at(
                self._scheduler.now() + self._background_interval, self._background_tick
            )

    async def _active_tick(self) -> None:
        try:
            self._stats.total_ticks += 1
            self._stats.last_tick_time = self._scheduler.now()
            if self._tracked:
                await self.sample_now()
        except Exception as e:
            logger.error("Active sampling tick failed: %s", e)
            self._stats.last_error = str(e)
        finally:
            self._schedule_active()

    async def _background_tick(self) -> None:
        try:
            # Tracked tokens are already sampled on the fast tick.
            idle_pins = self.pinned - self._tracked
            if idle_pins:
                await self.sample_now(idle_pins)
            await self.prune()
        except Exception as e:
            logger.error("Background sampling tick failed: %s", e)
            self._stats.last_error = str(e)
        finally:
            self._schedule_background()
