"""Winner determination and payout bookkeeping.

Everything here is pure: the state machine gathers samples and bets, calls
into this module, and persists the results.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal

from tokenwars.models import Bet, Competition, CompetitionDataError, Payout, PriceSample
from tokenwars.twap import TWAPResult, compute_twap, performance

PAYOUT_QUANTUM = Decimal("0.000000001")  # lamport precision
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ResolutionWindows:
    start_window: tuple[datetime, datetime]
    end_window: tuple[datetime, datetime]


@dataclass(frozen=True)
class ResolutionOutcome:
    """Result of comparing both tokens' performance.

    ``winner_token`` is None when the competition must be voided; ``void_reason``
    then says why.
    """

    token_a_start: TWAPResult
    token_a_end: TWAPResult
    token_b_start: TWAPResult
    token_b_end: TWAPResult
    token_a_performance: Decimal | None
    token_b_performance: Decimal | None
    winner_token: str | None
    void_reason: str | None = None

    @property
    def is_void(self) -> bool:
        return self.winner_token is None

    def persisted_fields(self) -> dict[str, Decimal | str | None]:
        return {
            "token_a_start_price": self.token_a_start.price if self.token_a_start.has_data else None,
            "token_b_start_price": self.token_b_start.price if self.token_b_start.has_data else None,
            "token_a_end_price": self.token_a_end.price if self.token_a_end.has_data else None,
            "token_b_end_price": self.token_b_end.price if self.token_b_end.has_data else None,
            "token_a_performance": self.token_a_performance,
            "token_b_performance": self.token_b_performance,
        }


def twap_windows(competition: Competition, twap_window: timedelta) -> ResolutionWindows:
    """Start window opens when voting ends, end window closes at ``end_time``.

    Both windows are clamped to the active phase so they never reach into
    voting or past the end.

    Raises:
        CompetitionDataError: If the active phase is missing or empty.
    """
    if competition.voting_end_time is None or competition.end_time is None:
        raise CompetitionDataError(f"competition {competition.competition_id} has no active phase bounds")
    if competition.end_time <= competition.voting_end_time:
        raise CompetitionDataError(f"competition {competition.competition_id} ends before its active phase starts")
    active = competition.end_time - competition.voting_end_time
    window = min(twap_window, active)
    return ResolutionWindows(
        start_window=(competition.voting_end_time, competition.voting_end_time + window),
        end_window=(competition.end_time - window, competition.end_time),
    )


def decide_winner(
    competition: Competition,
    samples_a: Sequence[PriceSample],
    samples_b: Sequence[PriceSample],
    twap_window: timedelta,
) -> ResolutionOutcome:
    windows = twap_windows(competition, twap_window)
    a_start = compute_twap(samples_a, *windows.start_window)
    a_end = compute_twap(samples_a, *windows.end_window)
    b_start = compute_twap(samples_b, *windows.start_window)
    b_end = compute_twap(samples_b, *windows.end_window)

    def outcome(
        perf_a: Decimal | None, perf_b: Decimal | None, winner: str | None, reason: str | None
    ) -> ResolutionOutcome:
        return ResolutionOutcome(a_start, a_end, b_start, b_end, perf_a, perf_b, winner, reason)

    missing = [
        label
        for label, result in (
            (f"{competition.token_a.symbol} start", a_start),
            (f"{competition.token_a.symbol} end", a_end),
            (f"{competition.token_b.symbol} start", b_start),
            (f"{competition.token_b.symbol} end", b_end),
        )
        if not result.has_data
    ]
    if missing:
        return outcome(None, None, None, f"missing price data: {', '.join(missing)}")
    if a_start.price <= 0 or b_start.price <= 0:
        return outcome(None, None, None, "non-positive start price")

    perf_a = performance(a_start.price, a_end.price)
    perf_b = performance(b_start.price, b_end.price)
    if perf_a == perf_b:
        return outcome(perf_a, perf_b, None, "tie: both tokens performed identically")
    winner = competition.token_a.address if perf_a > perf_b else competition.token_b.address
    return outcome(perf_a, perf_b, winner, None)


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(PAYOUT_QUANTUM, rounding=ROUND_DOWN)


def refund_all(bets: Sequence[Bet]) -> list[Payout]:
    return [Payout(bet_id=b.bet_id, amount=_quantize(b.amount), claimed_status="refunded") for b in bets]


def calculate_payouts(
    bets: Sequence[Bet],
    winner_token: str | None,
    platform_fee_percentage: Decimal,
) -> list[Payout]:
    """Split the pool, net of the platform fee, across winning bets.

    Each winner receives ``amount / winning_total * pool * (1 - fee)``,
    rounded down to lamport precision. Losing bets are marked expired with a
    zero payout. A void competition, or one where nobody backed the winner,
    refunds every stake.
    """
    if not bets:
        return []
    winning = [b for b in bets if b.chosen_token == winner_token]
    winning_total = sum((b.amount for b in winning), Decimal("0"))
    if winner_token is None or winning_total <= 0:
        return refund_all(bets)

    total_pool = sum((b.amount for b in bets), Decimal("0"))
    distributable = total_pool * (1 - platform_fee_percentage / HUNDRED)
    payouts: list[Payout] = []
    for bet in bets:
        if bet.chosen_token == winner_token:
            payouts.append(Payout(bet.bet_id, _quantize(bet.amount / winning_total * distributable), "pending"))
        else:
            payouts.append(Payout(bet.bet_id, Decimal("0"), "expired"))
    return payouts
