"""Session-scoped adapters used by the engine and the sampler.

The engine talks to ``SqlCompetitionStore`` and the sampler to
``SqlPriceSampleStore``. Each call opens its own session (one transaction per
operation) and wraps SQLAlchemy failures in ``RepositoryError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenwars.models import (
    Bet,
    Competition,
    CompetitionDataError,
    CompetitionDraft,
    CompetitionStatus,
    Payout,
    PriceSample,
    TokenPair,
)
from tokenwars.storage.repos import (
    BetRepository,
    CompetitionRepository,
    PriceSampleRepository,
    TokenPairRepository,
    competition_from_model,
)

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class RepositoryError(Exception):
    """Transient persistence failure (connection lost, timeout, constraint)."""


@asynccontextmanager
async def _wrapped(scope: SessionScope, operation: str) -> AsyncIterator[AsyncSession]:
    try:
        async with scope() as session:
            yield session
    except SQLAlchemyError as e:
        logger.warning("Repository operation %s failed: %s", operation, e)
        raise RepositoryError(f"{operation} failed: {e}") from e


class SqlCompetitionStore:
    """Competition persistence backed by SQLAlchemy.

    Example:
        ```python
        db = DatabaseManager(settings.database.url)
        store = SqlCompetitionStore(db.get_async_session)
        competitions = await store.list_competitions([CompetitionStatus.ACTIVE])
        ```
    """

    def __init__(self, session_scope: SessionScope) -> None:
        self._scope = session_scope

    async def ping(self) -> bool:
        async with _wrapped(self._scope, "ping") as session:
            await session.execute(text("SELECT 1"))
        return True

    async def list_competitions(
        self, statuses: Iterable[CompetitionStatus]
    ) -> list[Competition | CompetitionDataError]:
        """List competitions in ``statuses``.

        Rows that cannot be converted are returned as ``CompetitionDataError``
        instances so the caller can log and skip them individually.
        """
        status_list = list(statuses)
        results: list[Competition | CompetitionDataError] = []
        async with _wrapped(self._scope, "list_competitions") as session:
            rows = await CompetitionRepository(session).list_by_status(status_list)
            for row in rows:
                try:
                    results.append(competition_from_model(row))
                except CompetitionDataError as e:
                    results.append(e)
        return results

    async def get_competition(self, competition_id: str) -> Competition | None:
        async with _wrapped(self._scope, "get_competition") as session:
            return await CompetitionRepository(session).get(competition_id)

    async def insert_competition(self, draft: CompetitionDraft) -> Competition:
        async with _wrapped(self._scope, "insert_competition") as session:
            return await CompetitionRepository(session).insert(draft)

    async def update_competition_status(
        self,
        competition_id: str,
        status: CompetitionStatus,
        extra_fields: dict[str, Any] | None = None,
        *,
        expected_status: CompetitionStatus | None = None,
    ) -> Competition | None:
        values: dict[str, Any] = dict(extra_fields or {})
        values["status"] = status
        async with _wrapped(self._scope, "update_competition_status") as session:
            return await CompetitionRepository(session).update_fields(
                competition_id, values, expected_status=expected_status
            )

    async def list_token_pairs(self, *, active_only: bool = True) -> list[TokenPair]:
        async with _wrapped(self._scope, "list_token_pairs") as session:
            return await TokenPairRepository(session).list_pairs(active_only=active_only)

    async def get_token_pair(self, pair_id: str) -> TokenPair | None:
        async with _wrapped(self._scope, "get_token_pair") as session:
            return await TokenPairRepository(session).get(pair_id)

    async def add_token_pair(self, pair: TokenPair) -> TokenPair:
        async with _wrapped(self._scope, "add_token_pair") as session:
            return await TokenPairRepository(session).insert(pair)

    async def mark_token_pair_used(self, pair_id: str, when: datetime) -> None:
        async with _wrapped(self._scope, "mark_token_pair_used") as session:
            await TokenPairRepository(session).mark_used(pair_id, when)

    async def list_bets(self, competition_id: str) -> list[Bet]:
        async with _wrapped(self._scope, "list_bets") as session:
            return await BetRepository(session).list_for_competition(competition_id)

    async def record_payouts(self, competition_id: str, payouts: Sequence[Payout]) -> int:
        async with _wrapped(self._scope, "record_payouts") as session:
            return await BetRepository(session).apply_payouts(competition_id, payouts)


class SqlPriceSampleStore:
    """Price sample persistence in the price_history table."""

    def __init__(self, session_scope: SessionScope) -> None:
        self._scope = session_scope

    async def add_samples(self, samples: Sequence[PriceSample]) -> int:
        if not samples:
            return 0
        async with _wrapped(self._scope, "add_samples") as session:
            return await PriceSampleRepository(session).add_many(samples)

    async def get_samples(self, token_address: str, start: datetime, end: datetime) -> list[PriceSample]:
        async with _wrapped(self._scope, "get_samples") as session:
            return await PriceSampleRepository(session).list_range(token_address, start, end)

    async def prune_samples(self, cutoff: datetime, *, keep: Iterable[str] = ()) -> int:
        async with _wrapped(self._scope, "prune_samples") as session:
            return await PriceSampleRepository(session).delete_older_than(cutoff, keep=keep)
