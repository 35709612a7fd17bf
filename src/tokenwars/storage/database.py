"""Async engine and session scope for the competition database.

Production runs on PostgreSQL through asyncpg. Tests use
``sqlite+aiosqlite:///:memory:``, which SQLAlchemy serves from a single
static connection, so every session sees the same in-memory database.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tokenwars.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from tokenwars.config import DatabaseSettings

logger = logging.getLogger(__name__)

ASYNC_POSTGRES_SCHEME = "postgresql+asyncpg://"


def to_async_url(database_url: str) -> str:
    """Rewrite a plain ``postgresql://`` URL to the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        logger.warning("DATABASE_URL has no async driver; using %s", ASYNC_POSTGRES_SCHEME)
        return ASYNC_POSTGRES_SCHEME + database_url[len("postgresql://") :]
    return database_url


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, switching plain PostgreSQL URLs to asyncpg."""
    return create_async_engine(to_async_url(database_url), **kwargs)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet.

    Meant for development and tests; production schemas come from Alembic.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Created tables: %s", ", ".join(sorted(Base.metadata.tables)))


class DatabaseManager:
    """Owns the engine and hands out one transaction per ``async with``.

    Example:
        ```python
        db = DatabaseManager(settings.database.url)
        async with db.get_async_session() as session:
            ...
        await db.dispose_async()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self._engine_options: dict[str, Any] = {"echo": echo}
        if not database_url.startswith("sqlite"):
            self._engine_options.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)

        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings, **kwargs: Any) -> DatabaseManager:
        return cls(settings.url, **kwargs)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_db_engine(self.database_url, **self._engine_options)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on success and rolls back on error."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def init_schema_async(self) -> None:
        await create_schema(self.engine)

    async def dispose_async(self) -> None:
        """Close pooled connections; the engine is rebuilt on next use."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
