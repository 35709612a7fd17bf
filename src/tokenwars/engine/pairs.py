"""Token pair validation and automated pair selection."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from decimal import Decimal

from tokenwars.models import PriceQuote, TokenPair

logger = logging.getLogger(__name__)

DEFAULT_MARKET_CAP_TOLERANCE = 0.10
DEFAULT_RECENT_USE_WINDOW = timedelta(hours=24)

QuoteLookup = Callable[[Sequence[str]], Awaitable[dict[str, PriceQuote]]]


class CompetitionValidationError(Exception):
    """Raised when a token pair or competition config is unusable."""


def validate_pair(pair: TokenPair) -> None:
    """Structural checks on a pair.

    Raises:
        CompetitionValidationError: On missing token data, identical
            addresses or an inactive pair.
    """
    for label, token in (("token A", pair.token_a), ("token B", pair.token_b)):
        if not token.is_complete:
            raise CompetitionValidationError(f"{label} is missing address, symbol or name")
    if pair.token_a.address == pair.token_b.address:
        raise CompetitionValidationError(f"pair {pair.pair_id} uses the same token twice")
    if not pair.is_active:
        raise CompetitionValidationError(f"pair {pair.pair_id} is no longer active")


def check_market_alignment(
    pair: TokenPair,
    quotes: dict[str, PriceQuote],
    *,
    tolerance: float = DEFAULT_MARKET_CAP_TOLERANCE,
) -> None:
    """Check both tokens have a positive price and comparable market caps.

    A token with no quote fails the check. The market cap comparison is
    skipped when either cap is unknown.

    Raises:
        CompetitionValidationError: If the pair is not tradeable right now.
    """
    caps = []
    for token in (pair.token_a, pair.token_b):
        quote = quotes.get(token.address)
        if quote is None:
            raise CompetitionValidationError(f"no price available for {token.symbol}")
        if quote.price <= 0:
            raise CompetitionValidationError(f"non-positive price for {token.symbol}")
        caps.append(quote.market_cap)

    cap_a, cap_b = caps
    if not cap_a or not cap_b:
        return
    average = (cap_a + cap_b) / 2
    deviation = abs(cap_a - cap_b) / average
    if deviation > Decimal(str(tolerance)):
        raise CompetitionValidationError(
            f"market cap deviation {deviation:.3f} exceeds tolerance {tolerance:.3f} "
            f"({pair.token_a.symbol} vs {pair.token_b.symbol})"
        )


def rank_pairs(
    pairs: Sequence[TokenPair],
    *,
    now: datetime,
    recent_window: timedelta = DEFAULT_RECENT_USE_WINDOW,
) -> list[TokenPair]:
    """Order candidates: not-recently-used first, then by compatibility score."""
    return sorted(
        pairs,
        key=lambda p: (p.used_within(recent_window, now=now), -p.compatibility_score),
    )


class PairSelector:
    """Pick the best valid pair for the next automated competition."""

    def __init__(
        self,
        list_pairs: Callable[[], Awaitable[list[TokenPair]]],
        quote_lookup: QuoteLookup | None = None,
        *,
        market_cap_tolerance: float = DEFAULT_MARKET_CAP_TOLERANCE,
        recent_window: timedelta = DEFAULT_RECENT_USE_WINDOW,
    ) -> None:
        self._list_pairs = list_pairs
        self._quote_lookup = quote_lookup
        self._tolerance = market_cap_tolerance
        self._recent_window = recent_window

    async def select(self, now: datetime, *, exclude: set[frozenset[str]] | None = None) -> TokenPair | None:
        """Return the first candidate that passes validation, or None.

        Args:
            now: Current time, for the recent-use penalty.
            exclude: Token address pairs already in an open competition.
        """
        exclude = exclude or set()
        candidates = [
            p
            for p in rank_pairs(await self._list_pairs(), now=now, recent_window=self._recent_window)
            if frozenset((p.token_a.address, p.token_b.address)) not in exclude
        ]
        if not candidates:
            logger.info("No active token pairs available")
            return None

        quotes: dict[str, PriceQuote] | None = None
        if self._quote_lookup is not None:
            addresses = sorted({a for p in candidates for a in (p.token_a.address, p.token_b.address)})
            quotes = await self._quote_lookup(addresses)

        for pair in candidates:
            try:
                validate_pair(pair)
                if quotes is not None:
                    check_market_alignment(pair, quotes, tolerance=self._tolerance)
            except CompetitionValidationError as e:
                logger.debug("Skipping pair %s: %s", pair.pair_id, e)
                continue
            return pair

        logger.info("None of %d candidate pair(s) passed validation", len(candidates))
        return None
