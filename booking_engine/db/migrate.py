# booking_engine/db/migrate.py
"""
Apply SQL files from migrations/ in filename order.

Usage:
    python -m booking_engine.db.migrate
"""

import asyncio
from pathlib import Path

import psycopg

from booking_engine.config import settings
from booking_engine.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


def migration_files(directory: Path = MIGRATIONS_DIR) -> list[Path]:
    return sorted(directory.glob("*.sql"))


async def apply_migrations(database_url: str, directory: Path = MIGRATIONS_DIR) -> list[str]:
    applied = []
    async with await psycopg.AsyncConnection.connect(database_url, autocommit=True) as conn:
        for path in migration_files(directory):
            logger.info("Applying migration", migration=path.name)
            await conn.execute(path.read_text())
            applied.append(path.name)

    logger.info("Migrations applied", count=len(applied))
    return applied


async def run_migrations() -> None:
    await apply_migrations(settings.DATABASE_URL)


def main() -> None:
    setup_logging(settings.LOG_LEVEL)
    asyncio.run(run_migrations())


if __name__ == "__main__":
    main()
