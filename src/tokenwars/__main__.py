"""Command line entry point.

Usage:
    python -m tokenwars run [--dry-run]
    python -m tokenwars init-db
    python -m tokenwars add-pair A_ADDR A_SYMBOL A_NAME B_ADDR B_SYMBOL B_NAME
    python -m tokenwars create PAIR_ID
    python -m tokenwars config
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from collections.abc import Sequence

from tokenwars.config import Settings, get_settings
from tokenwars.engine.lifecycle import build_draft
from tokenwars.engine.pairs import CompetitionValidationError
from tokenwars.models import CompetitionConfig, TokenInfo, TokenPair
from tokenwars.scheduler import utcnow
from tokenwars.service import TokenWarsService
from tokenwars.storage.database import DatabaseManager
from tokenwars.storage.store import RepositoryError, SqlCompetitionStore

logger = logging.getLogger("tokenwars")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="tokenwars", description="Token competition engine")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the competition engine until interrupted")
    run.add_argument("--dry-run", action="store_true", default=None, help="Log alerts instead of sending them")

    sub.add_parser("init-db", help="Create database tables (development only; use alembic in production)")

    add_pair = sub.add_parser("add-pair", help="Register a candidate token pair")
    for side in ("a", "b"):
        add_pair.add_argument(f"token_{side}_address")
        add_pair.add_argument(f"token_{side}_symbol")
        add_pair.add_argument(f"token_{side}_name")
    add_pair.add_argument("--score", type=float, default=0.5, help="Compatibility score (default: 0.5)")
    add_pair.add_argument("--category", default="general")

    create = sub.add_parser("create", help="Create a competition from a registered token pair")
    create.add_argument("pair_id")

    sub.add_parser("config", help="Print the effective configuration with secrets redacted")
    return parser.parse_args(argv)


async def _run(settings: Settings, dry_run: bool | None) -> None:
    service = TokenWarsService(settings, dry_run=dry_run)
    await service.run()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager.from_settings(settings.database)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _add_pair(settings: Settings, args: argparse.Namespace) -> TokenPair:
    pair = TokenPair(
        pair_id=str(uuid.uuid4()),
        token_a=TokenInfo(args.token_a_address, args.token_a_symbol, args.token_a_name),
        token_b=TokenInfo(args.token_b_address, args.token_b_symbol, args.token_b_name),
        compatibility_score=args.score,
        category=args.category,
    )
    db = DatabaseManager.from_settings(settings.database)
    try:
        return await SqlCompetitionStore(db.get_async_session).add_token_pair(pair)
    finally:
        await db.dispose_async()


async def _create(settings: Settings, pair_id: str) -> str:
    """Insert a SETUP competition; a running engine adopts it on its next resync."""
    db = DatabaseManager.from_settings(settings.database)
    try:
        store = SqlCompetitionStore(db.get_async_session)
        pair = await store.get_token_pair(pair_id)
        if pair is None:
            raise CompetitionValidationError(f"token pair {pair_id} not found")
        config = CompetitionConfig(
            pair=pair,
            start_delay=settings.automation.start_delay,
            voting_duration=settings.automation.voting_duration,
            active_duration=settings.automation.active_duration,
            bet_amount=settings.competition.bet_amount,
            platform_fee_percentage=settings.competition.platform_fee_percentage,
        )
        competition = await store.insert_competition(build_draft(config, utcnow(), created_by="manual"))
        return competition.competition_id
    finally:
        await db.dispose_async()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)

    try:
        if args.command == "run":
            asyncio.run(_run(settings, args.dry_run))
        elif args.command == "init-db":
            asyncio.run(_init_db(settings))
            logger.info("Database schema created")
        elif args.command == "add-pair":
            pair = asyncio.run(_add_pair(settings, args))
            print(pair.pair_id)
        elif args.command == "create":
            print(asyncio.run(_create(settings, args.pair_id)))
        elif args.command == "config":
            print(json.dumps(settings.redacted_summary(), indent=2))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except (CompetitionValidationError, RepositoryError) as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
