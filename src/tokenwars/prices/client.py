"""HTTP client for the fetch-prices edge function with rate limiting and retry."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from functools import wraps
from typing import Any, ParamSpec, Protocol, TypeVar

import httpx

from tokenwars.models import PriceQuote

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_REQUESTS_PER_SECOND = 5.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
FETCH_PRICES_PATH = "/functions/v1/fetch-prices"


class PriceSource(Protocol):
    """Anything that can return current quotes for a set of token addresses."""

    async def fetch_current_prices(self, addresses: Sequence[str]) -> list[PriceQuote]: ...


class RateLimiter:
    """Minimum-interval rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = MAX_REQUESTS_PER_SECOND) -> None:
        """Initialize the rate limiter.

        Args:
            max_requests_per_second: Maximum requests allowed per second.
        """
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class PriceSourceError(Exception):
    """Base exception for price source errors."""


class PriceSourceTransientError(PriceSourceError):
    """Raised for retryable errors (429/5xx, timeouts, network issues)."""


class RetryError(PriceSourceError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    retry_on: tuple[type[Exception], ...] = (PriceSourceTransientError,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for adding retry logic with exponential backoff to coroutines.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay in seconds (doubles with each retry).
        retry_on: Tuple of exception types to retry on.

    Returns:
        Decorated coroutine function with retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        break

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                        attempt + 1,
                        max_retries + 1,
                        str(e),
                        delay,
                    )
                    await asyncio.sleep(delay)

            raise RetryError(
                f"All {max_retries + 1} attempts failed for {func.__name__}",
                last_exception=last_exception,
            )

        return wrapper

    return decorator


class EdgePriceClient:
    """Client for the backend's ``fetch-prices`` function.

    The function accepts a batch of token addresses and answers with the
    latest known price, volume and market cap for each. Addresses the backend
    has no price for are simply absent from the result.

    Example:
        >>> client = EdgePriceClient(base_url="https://xyz.supabase.co", anon_key="...")
        >>> quotes = await client.fetch_current_prices(["So111...", "EPjF..."])
        >>> await client.close()
    """

    def __init__(
        self,
        *,
        base_url: str,
        anon_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        requests_per_second: float = MAX_REQUESTS_PER_SECOND,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = base_url.rstrip("/") + FETCH_PRICES_PATH
        self._anon_key = anon_key
        self._timeout = timeout_seconds
        self._rate_limiter = RateLimiter(requests_per_second)
        self._client = client
        self._owns_client = client is None
        self._fetch = with_retry(max_retries=max_retries, base_delay=retry_base_delay)(self._post_once)

        logger.info(
            "Initialized EdgePriceClient with url=%s, rate_limit=%.1f req/s",
            self._url,
            requests_per_second,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._anon_key:
            headers["Authorization"] = f"Bearer {self._anon_key}"
            headers["apikey"] = self._anon_key
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _post_once(self, addresses: list[str]) -> dict[str, Any]:
        await self._rate_limiter.acquire()
        client = self._get_client()
        try:
            response = await client.post(
                self._url,
                json={"addresses": addresses, "forceRefresh": False},
                headers=self._headers(),
            )
        except httpx.TransportError as e:
            raise PriceSourceTransientError(f"price request failed: {e}") from e

        if response.status_code in RETRY_STATUS_CODES:
            raise PriceSourceTransientError(f"price source returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise PriceSourceError(f"price source returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise PriceSourceError("price source returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise PriceSourceError("price source returned an unexpected payload")
        return payload

    async def fetch_current_prices(self, addresses: Sequence[str]) -> list[PriceQuote]:
        """Fetch current quotes for ``addresses``.

        Raises:
            PriceSourceError: On a non-retryable failure or when the backend
                reports ``success: false``.
            RetryError: When transient failures exhaust the retry budget.
        """
        requested = list(dict.fromkeys(a for a in addresses if a))
        if not requested:
            return []

        payload = await self._fetch(requested)
        if not payload.get("success", False):
            raise PriceSourceError(f"price source reported failure: {payload.get('error', 'unknown error')}")

        wanted = set(requested)
        default_source = payload.get("source")
        quotes: list[PriceQuote] = []
        for item in payload.get("prices") or []:
            if not isinstance(item, dict):
                continue
            try:
                quote = PriceQuote.from_dict(item, default_source=default_source)
            except ValueError as e:
                logger.warning("Skipping malformed price entry: %s", e)
                continue
            if quote.address in wanted:
                quotes.append(quote)

        logger.debug("Fetched %d/%d prices", len(quotes), len(requested))
        return quotes
