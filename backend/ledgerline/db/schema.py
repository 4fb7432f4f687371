"""Schema bootstrap: Alembic upgrade for deployments, ``create_all`` for local/test runs."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config
from sqlalchemy.ext.asyncio import AsyncEngine

import ledgerline.db.models  # noqa: F401
from ledgerline.db.base import Base

_log = structlog.get_logger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def alembic_config(database_url: str) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    config.set_main_option("sqlalchemy.url", database_url)
    config.attributes["configure_logger"] = False
    return config


def upgrade_to_head(database_url: str) -> None:
    command.upgrade(alembic_config(database_url), "head")
    _log.info("migrations_applied")


async def apply_migrations(database_url: str) -> None:
    """Run the Alembic upgrade on a worker thread; env.py drives its own event loop."""
    await asyncio.to_thread(upgrade_to_head, database_url)


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _log.info("schema_created")
