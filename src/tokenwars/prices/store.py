"""Sample store interface and an in-memory implementation."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from tokenwars.models import PriceSample

DEFAULT_MAX_SAMPLES_PER_TOKEN = 20_000


class SampleStore(Protocol):
    """Where the sampler writes and the resolver reads price samples."""

    async def add_samples(self, samples: Sequence[PriceSample]) -> int: ...

    async def get_samples(self, token_address: str, start: datetime, end: datetime) -> list[PriceSample]: ...

    async def prune_samples(self, cutoff: datetime, *, keep: Iterable[str] = ()) -> int: ...


class MemorySampleStore:
    """Bounded per-token sample buffers, used when no database is configured."""

    def __init__(self, *, max_samples_per_token: int = DEFAULT_MAX_SAMPLES_PER_TOKEN) -> None:
        self._samples: dict[str, deque[PriceSample]] = defaultdict(
            lambda: deque(maxlen=max_samples_per_token)
        )

    async def add_samples(self, samples: Sequence[PriceSample]) -> int:
        for sample in samples:
            self._samples[sample.token_address].append(sample)
        return len(samples)

    async def get_samples(self, token_address: str, start: datetime, end: datetime) -> list[PriceSample]:
        buffer = self._samples.get(token_address)
        if not buffer:
            return []
        return sorted(
            (s for s in buffer if start <= s.timestamp <= end),
            key=lambda s: s.timestamp,
        )

    async def prune_samples(self, cutoff: datetime, *, keep: Iterable[str] = ()) -> int:
        keep_set = set(keep)
        removed = 0
        for address in list(self._samples):
            if address in keep_set:
                continue
            buffer = self._samples[address]
            kept = [s for s in buffer if s.timestamp >= cutoff]
            removed += len(buffer) - len(kept)
            if kept:
                buffer.clear()
                buffer.extend(kept)
            else:
                del self._samples[address]
        return removed

    def count(self, token_address: str | None = None) -> int:
        if token_address is not None:
            return len(self._samples.get(token_address, ()))
        return sum(len(b) for b in self._samples.values())
