"""Tests for domain models."""

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from conftest import T0, TOKEN_A, TOKEN_B, make_competition
from tokenwars.models import (
    CompetitionDataError,
    CompetitionStatus,
    PriceQuote,
    TokenPair,
    parse_timestamp,
)


class TestCompetitionStatus:
    """Tests for CompetitionStatus ordering."""

    def test_successor_chain(self) -> None:
        assert CompetitionStatus.SETUP.successor() == CompetitionStatus.VOTING
        assert CompetitionStatus.VOTING.successor() == CompetitionStatus.ACTIVE
        assert CompetitionStatus.ACTIVE.successor() == CompetitionStatus.CLOSED
        assert CompetitionStatus.CLOSED.successor() == CompetitionStatus.RESOLVED
        assert CompetitionStatus.RESOLVED.successor() is None

    def test_escape_states_have_no_successor(self) -> None:
        assert CompetitionStatus.CANCELLED.successor() is None
        assert CompetitionStatus.PAUSED.successor() is None

    def test_precedes(self) -> None:
        assert CompetitionStatus.SETUP.precedes(CompetitionStatus.ACTIVE)
        assert not CompetitionStatus.ACTIVE.precedes(CompetitionStatus.VOTING)
        assert not CompetitionStatus.ACTIVE.precedes(CompetitionStatus.ACTIVE)
        assert not CompetitionStatus.VOTING.precedes(CompetitionStatus.CANCELLED)

    def test_terminal(self) -> None:
        assert CompetitionStatus.RESOLVED.is_terminal
        assert CompetitionStatus.PAUSED.is_terminal
        assert not CompetitionStatus.CLOSED.is_terminal


class TestCompetition:
    """Tests for Competition."""

    def test_next_transition_follows_timestamps(self) -> None:
        competition = make_competition()
        assert competition.next_transition() == (CompetitionStatus.VOTING, T0 + timedelta(minutes=5))

        active = replace(competition, status=CompetitionStatus.ACTIVE)
        assert active.next_transition() == (CompetitionStatus.CLOSED, T0 + timedelta(minutes=80))

    def test_no_time_driven_transition_from_closed(self) -> None:
        closed = make_competition(status=CompetitionStatus.CLOSED)
        assert closed.next_transition() is None

    def test_validate_rejects_missing_timestamp(self) -> None:
        competition = replace(make_competition(), end_time=None)
        with pytest.raises(CompetitionDataError):
            competition.validate()

    def test_validate_rejects_unordered_timestamps(self) -> None:
        competition = replace(make_competition(), voting_end_time=T0)
        with pytest.raises(CompetitionDataError):
            competition.validate()

    def test_token_for(self) -> None:
        competition = make_competition()
        assert competition.token_for(TOKEN_B.address) == TOKEN_B
        assert competition.token_for("unknown") is None


class TestTokenPair:
    """Tests for TokenPair."""

    def test_used_within(self) -> None:
        pair = TokenPair("p", TOKEN_A, TOKEN_B, last_used=T0 - timedelta(hours=2))
        assert pair.used_within(timedelta(hours=24), now=T0)
        assert not pair.used_within(timedelta(hours=1), now=T0)
        assert not TokenPair("q", TOKEN_A, TOKEN_B).used_within(timedelta(hours=24), now=T0)


class TestPriceQuote:
    """Tests for PriceQuote parsing."""

    def test_from_dict(self) -> None:
        quote = PriceQuote.from_dict(
            {
                "address": TOKEN_A.address,
                "price": "142.5",
                "market_cap": 6.5e10,
                "timestamp": "2026-03-01T12:00:00Z",
            },
            default_source="edge",
        )
        assert quote.price == Decimal("142.5")
        assert quote.timestamp == T0
        assert quote.source == "edge"
        assert quote.market_cap == Decimal("65000000000.0")

    def test_from_dict_rejects_bad_price(self) -> None:
        with pytest.raises(ValueError):
            PriceQuote.from_dict({"address": TOKEN_A.address, "price": "n/a"})
        with pytest.raises(ValueError):
            PriceQuote.from_dict({"address": TOKEN_A.address, "price": -1})

    def test_from_dict_rejects_missing_address(self) -> None:
        with pytest.raises(ValueError):
            PriceQuote.from_dict({"price": 1})

    def test_json_round_trip_keeps_decimals(self) -> None:
        quote = PriceQuote(address=TOKEN_A.address, price=Decimal("0.000012345"), timestamp=T0, source="edge")
        assert PriceQuote.from_json(quote.to_json()) == quote


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_epoch_seconds_and_millis(self) -> None:
        seconds = T0.timestamp()
        assert parse_timestamp(seconds) == T0
        assert parse_timestamp(seconds * 1000) == T0

    def test_naive_iso_is_utc(self) -> None:
        assert parse_timestamp("2026-03-01T12:00:00") == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def test_garbage(self) -> None:
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
