"""Storage layer - Database schemas, repositories and store adapters."""

from tokenwars.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_schema,
)
from tokenwars.storage.models import (
    Base,
    BetModel,
    CompetitionModel,
    PriceSampleModel,
    TokenPairModel,
)
from tokenwars.storage.repos import (
    BetRepository,
    CompetitionRepository,
    PriceSampleRepository,
    TokenPairRepository,
)
from tokenwars.storage.store import RepositoryError, SqlCompetitionStore, SqlPriceSampleStore

__all__ = [
    "Base",
    "BetModel",
    "BetRepository",
    "CompetitionModel",
    "CompetitionRepository",
    "DatabaseManager",
    "PriceSampleModel",
    "PriceSampleRepository",
    "RepositoryError",
    "SqlCompetitionStore",
    "SqlPriceSampleStore",
    "TokenPairModel",
    "TokenPairRepository",
    "create_async_db_engine",
    "create_schema",
]
