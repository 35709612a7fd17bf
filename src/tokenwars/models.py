"""Domain models for the competition engine.

These types are shared by the state machine, the price sampler and the
storage layer. Competitions are immutable snapshots: every phase change
produces a new instance via ``dataclasses.replace``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class CompetitionDataError(Exception):
    """Raised when a stored competition is missing required fields."""


class CompetitionStatus(str, Enum):
    """Lifecycle phases of a competition."""

    SETUP = "setup"
    VOTING = "voting"
    ACTIVE = "active"
    CLOSED = "closed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    PAUSED = "paused"

    @property
    def rank(self) -> int | None:
        """Position in the automatic lifecycle, or None for escape states."""
        try:
            return LIFECYCLE_ORDER.index(self)
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def successor(self) -> CompetitionStatus | None:
        """Return the next automatic phase, or None if there is none."""
        rank = self.rank
        if rank is None or rank + 1 >= len(LIFECYCLE_ORDER):
            return None
        return LIFECYCLE_ORDER[rank + 1]

    def precedes(self, other: CompetitionStatus) -> bool:
        """True if ``other`` is strictly later in the automatic lifecycle."""
        if self.rank is None or other.rank is None:
            return False
        return self.rank < other.rank


LIFECYCLE_ORDER: tuple[CompetitionStatus, ...] = (
    CompetitionStatus.SETUP,
    CompetitionStatus.VOTING,
    CompetitionStatus.ACTIVE,
    CompetitionStatus.CLOSED,
    CompetitionStatus.RESOLVED,
)
TERMINAL_STATUSES = frozenset(
    {CompetitionStatus.RESOLVED, CompetitionStatus.CANCELLED, CompetitionStatus.PAUSED}
)
RECOVERABLE_STATUSES = frozenset(
    {
        CompetitionStatus.SETUP,
        CompetitionStatus.VOTING,
        CompetitionStatus.ACTIVE,
        CompetitionStatus.CLOSED,
    }
)
OPEN_STATUSES = frozenset(
    {CompetitionStatus.SETUP, CompetitionStatus.VOTING, CompetitionStatus.ACTIVE}
)


def ensure_utc(ts: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def parse_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings, epoch seconds or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, int | float):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=UTC)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


@dataclass(frozen=True)
class TokenInfo:
    """A token taking part in a competition."""

    address: str
    symbol: str
    name: str
    logo_uri: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.address.strip() and self.symbol.strip() and self.name.strip())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenInfo:
        return cls(
            address=str(data.get("address") or ""),
            symbol=str(data.get("symbol") or ""),
            name=str(data.get("name") or ""),
            logo_uri=data.get("logo_uri") or data.get("logoURI"),
        )


@dataclass(frozen=True)
class Competition:
    """A two-token prediction market and its lifecycle state."""

    competition_id: str
    token_a: TokenInfo
    token_b: TokenInfo
    status: CompetitionStatus
    start_time: datetime | None
    voting_end_time: datetime | None
    end_time: datetime | None
    bet_amount: Decimal = Decimal("0.1")
    platform_fee_percentage: Decimal = Decimal("15")
    total_pool: Decimal = Decimal("0")
    total_bets: int = 0
    winner_token: str | None = None
    token_a_start_price: Decimal | None = None
    token_b_start_price: Decimal | None = None
    token_a_end_price: Decimal | None = None
    token_b_end_price: Decimal | None = None
    token_a_performance: Decimal | None = None
    token_b_performance: Decimal | None = None
    created_by: str = "manual"
    resolution_note: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def token_addresses(self) -> tuple[str, str]:
        return (self.token_a.address, self.token_b.address)

    def validate(self) -> None:
        """Check the fields the state machine depends on.

        Raises:
            CompetitionDataError: If required data is missing or inconsistent.
        """
        if not self.competition_id:
            raise CompetitionDataError("competition has no id")
        if not self.token_a.address or not self.token_b.address:
            raise CompetitionDataError(f"competition {self.competition_id} is missing a token address")
        if self.start_time is None or self.voting_end_time is None or self.end_time is None:
            raise CompetitionDataError(f"competition {self.competition_id} is missing a phase timestamp")
        if not (self.start_time < self.voting_end_time < self.end_time):
            raise CompetitionDataError(
                f"competition {self.competition_id} has unordered timestamps "
                f"({self.start_time.isoformat()}, {self.voting_end_time.isoformat()}, "
                f"{self.end_time.isoformat()})"
            )

    def transition_time(self, target: CompetitionStatus) -> datetime | None:
        """Timestamp at which the competition enters ``target``."""
        if target == CompetitionStatus.VOTING:
            return self.start_time
        if target == CompetitionStatus.ACTIVE:
            return self.voting_end_time
        if target == CompetitionStatus.CLOSED:
            return self.end_time
        return None

    def next_transition(self) -> tuple[CompetitionStatus, datetime] | None:
        """The next time-driven transition, or None from CLOSED and escape states."""
        target = self.status.successor()
        if target is None:
            return None
        fire_at = self.transition_time(target)
        if fire_at is None:
            return None
        return target, fire_at

    def token_for(self, address: str) -> TokenInfo | None:
        if address == self.token_a.address:
            return self.token_a
        if address == self.token_b.address:
            return self.token_b
        return None


@dataclass(frozen=True)
class CompetitionDraft:
    """Values for a competition that has not been persisted yet."""

    token_a: TokenInfo
    token_b: TokenInfo
    start_time: datetime
    voting_end_time: datetime
    end_time: datetime
    bet_amount: Decimal
    platform_fee_percentage: Decimal
    created_by: str
    status: CompetitionStatus = CompetitionStatus.SETUP


@dataclass(frozen=True)
class TokenPair:
    """A candidate pairing of two tokens."""

    pair_id: str
    token_a: TokenInfo
    token_b: TokenInfo
    compatibility_score: float = 0.5
    category: str = "general"
    is_active: bool = True
    last_used: datetime | None = None

    def used_within(self, window: timedelta, *, now: datetime) -> bool:
        return self.last_used is not None and now - self.last_used < window


@dataclass(frozen=True)
class CompetitionConfig:
    """Parameters for creating a competition from a token pair."""

    pair: TokenPair
    start_delay: timedelta
    voting_duration: timedelta
    active_duration: timedelta
    bet_amount: Decimal = Decimal("0.1")
    platform_fee_percentage: Decimal = Decimal("15")


@dataclass
class PhaseTimer:
    """The single pending transition for a competition.

    ``handle`` is whatever the scheduler returned; it must expose ``cancel()``.
    """

    competition_id: str
    target_phase: CompetitionStatus
    fire_at: datetime
    handle: Any = None

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()


@dataclass(frozen=True)
class PriceQuote:
    """A price observation returned by the price source."""

    address: str
    price: Decimal
    timestamp: datetime
    volume: Decimal | None = None
    market_cap: Decimal | None = None
    source: str | None = None
    confidence: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, default_source: str | None = None) -> PriceQuote:
        """Create a quote from a price-source payload.

        Raises:
            ValueError: If the address or price is missing or invalid.
        """
        address = str(data.get("address") or data.get("token_address") or "")
        price = parse_decimal(data.get("price", data.get("price_usd")))
        if not address:
            raise ValueError("quote has no address")
        if price is None or price < 0:
            raise ValueError(f"quote for {address} has invalid price {data.get('price')!r}")
        confidence = data.get("confidence")
        return cls(
            address=address,
            price=price,
            timestamp=parse_timestamp(data.get("timestamp")) or datetime.now(UTC),
            volume=parse_decimal(data.get("volume")),
            market_cap=parse_decimal(data.get("market_cap")),
            source=data.get("source") or default_source,
            confidence=float(confidence) if confidence is not None else None,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "address": self.address,
                "price": str(self.price),
                "timestamp": self.timestamp.isoformat(),
                "volume": str(self.volume) if self.volume is not None else None,
                "market_cap": str(self.market_cap) if self.market_cap is not None else None,
                "source": self.source,
                "confidence": self.confidence,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> PriceQuote:
        return cls.from_dict(json.loads(raw))

    def to_sample(self) -> PriceSample:
        return PriceSample(
            token_address=self.address,
            price=self.price,
            timestamp=self.timestamp,
            volume=self.volume,
            market_cap=self.market_cap,
            source=self.source,
            confidence=self.confidence,
        )


@dataclass(frozen=True)
class PriceSample:
    """A stored price observation used for TWAP computation."""

    token_address: str
    price: Decimal
    timestamp: datetime
    volume: Decimal | None = None
    market_cap: Decimal | None = None
    source: str | None = None
    confidence: float | None = None


@dataclass(frozen=True)
class Bet:
    """A user's stake on one side of a competition."""

    bet_id: str
    user_wallet: str
    competition_id: str
    chosen_token: str
    amount: Decimal
    payout_amount: Decimal | None = None
    claimed_status: str = "pending"


@dataclass(frozen=True)
class Payout:
    """Payout bookkeeping entry computed at resolution."""

    bet_id: str
    amount: Decimal
    claimed_status: str = "pending"


class EventType(str, Enum):
    """Outbound notification types."""

    PHASE_CHANGED = "phase_changed"
    RESOLVED = "resolved"
    AUTOMATION_DISABLED = "automation_disabled"
    ERROR = "error"


@dataclass(frozen=True)
class CompetitionEvent:
    """Notification published to UI and operator subscribers."""

    type: EventType
    competition_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
