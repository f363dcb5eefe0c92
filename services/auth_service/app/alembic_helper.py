import asyncio
import os

from alembic import command
from alembic.config import Config
from loguru import logger

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "db", "migrations")


def build_alembic_config(database_dsn: str) -> Config:
    alembic_cfg = Config(os.path.join(MIGRATIONS_DIR, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", MIGRATIONS_DIR)
    alembic_cfg.set_main_option("sqlalchemy.url", database_dsn)
    return alembic_cfg


async def run_alembic_migrations(database_dsn: str) -> None:
    """
    Upgrade the schema to head using the given sync DSN.
    Alembic is synchronous, so the upgrade runs in a worker thread.
    """
    try:
        alembic_cfg = build_alembic_config(database_dsn)
        logger.info("🚀 Running Alembic migrations...")
        await asyncio.to_thread(command.upgrade, alembic_cfg, "head")
        logger.info("✅ Alembic migrations applied successfully.")
    except Exception as e:
        logger.error(f"❌ Alembic migration failed: {e}")
        raise
