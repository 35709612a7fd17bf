"""Price acquisition: edge-function client, latest-price cache and sampler."""

from tokenwars.prices.cache import LatestPriceCache
from tokenwars.prices.client import (
    EdgePriceClient,
    PriceSource,
    PriceSourceError,
    PriceSourceTransientError,
    RateLimiter,
    RetryError,
    with_retry,
)
from tokenwars.prices.sampler import PriceSampler, SamplerState, SamplerStats
from tokenwars.prices.store import MemorySampleStore, SampleStore

__all__ = [
    "EdgePriceClient",
    "LatestPriceCache",
    "MemorySampleStore",
    "PriceSampler",
    "PriceSource",
    "PriceSourceError",
    "PriceSourceTransientError",
    "RateLimiter",
    "RetryError",
    "SampleStore",
    "SamplerState",
    "SamplerStats",
    "with_retry",
]
