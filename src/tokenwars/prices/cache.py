"""Redis cache of the latest quote per token."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from redis.asyncio import Redis

from tokenwars.models import PriceQuote

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 120
DEFAULT_REDIS_KEY_PREFIX = "tokenwars:price:"


class LatestPriceCache:
    """Cache-first store for the most recent quote of each token."""

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._key_prefix = key_prefix

    def _key(self, address: str) -> str:
        return f"{self._key_prefix}{address}"

    async def set(self, quote: PriceQuote) -> None:
        await self._redis.setex(self._key(quote.address), self._ttl, quote.to_json())

    async def set_many(self, quotes: Iterable[PriceQuote]) -> None:
        quotes = list(quotes)
        if not quotes:
            return
        async with self._redis.pipeline(transaction=False) as pipe:
            for quote in quotes:
                pipe.setex(self._key(quote.address), self._ttl, quote.to_json())
            await pipe.execute()

    async def get(self, address: str) -> PriceQuote | None:
        raw = await self._redis.get(self._key(address))
        return self._decode(address, raw)

    async def get_many(self, addresses: Sequence[str]) -> dict[str, PriceQuote]:
        if not addresses:
            return {}
        raws = await self._redis.mget([self._key(a) for a in addresses])
        found: dict[str, PriceQuote] = {}
        for address, raw in zip(addresses, raws, strict=False):
            quote = self._decode(address, raw)
            if quote is not None:
                found[address] = quote
        return found

    @staticmethod
    def _decode(address: str, raw: bytes | str | None) -> PriceQuote | None:
        if not raw:
            return None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode()
            return PriceQuote.from_json(str(raw))
        except ValueError as e:
            logger.warning("Failed to parse cached price for %s: %s", address, e)
            return None
