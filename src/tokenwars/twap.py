"""Time-weighted average price calculation.

Each sample's price is weighted by the time until the next sample; the sum
is divided by the time between the first and the last sample. The last
sample in the window therefore only bounds the interval. Pure functions with
no I/O.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from tokenwars.models import PriceSample

ZERO = Decimal("0")


class TWAPError(Exception):
    """Raised when a performance ratio cannot be computed."""


@dataclass(frozen=True)
class TWAPResult:
    """Outcome of a TWAP computation over one window.

    ``degraded`` is set when the price did not come from a proper time
    weighting: no samples, a single sample, or all samples at the same
    instant.
    """

    price: Decimal
    sample_count: int
    degraded: bool
    window_start: datetime
    window_end: datetime

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0


def compute_twap(
    samples: Iterable[PriceSample],
    window_start: datetime,
    window_end: datetime,
) -> TWAPResult:
    """Compute the TWAP of ``samples`` falling inside ``[window_start, window_end]``.

    Args:
        samples: Price samples, in any order.
        window_start: Inclusive window start.
        window_end: Inclusive window end.

    Returns:
        TWAPResult. With no samples in the window the price is 0 and the
        result is marked degraded; a single sample yields its own price, also
        marked degraded.
    """
    in_window = sorted(
        (s for s in samples if window_start <= s.timestamp <= window_end),
        key=lambda s: s.timestamp,
    )
    count = len(in_window)

    if count == 0:
        return TWAPResult(ZERO, 0, True, window_start, window_end)
    if count == 1:
        return TWAPResult(max(in_window[0].price, ZERO), 1, True, window_start, window_end)

    total_seconds = Decimal(
        str((in_window[-1].timestamp - in_window[0].timestamp).total_seconds())
    )
    if total_seconds <= 0:
        mean = sum((s.price for s in in_window), ZERO) / count
        return TWAPResult(max(mean, ZERO), count, True, window_start, window_end)

    weighted = ZERO
    for current, following in zip(in_window, in_window[1:], strict=False):
        dt = Decimal(str((following.timestamp - current.timestamp).total_seconds()))
        weighted += current.price * dt

    return TWAPResult(max(weighted / total_seconds, ZERO), count, False, window_start, window_end)


def performance(start_price: Decimal, end_price: Decimal) -> Decimal:
    """Relative change ``(end - start) / start``.

    Raises:
        TWAPError: If the start price is not positive.
    """
    if start_price <= 0:
        raise TWAPError(f"start price must be positive, got {start_price}")
    return (end_price - start_price) / start_price
