"""Versioned schema and data migrations.

Revisions live in ``alembic/versions`` as an ordered, linear chain; Alembic's
``alembic_version`` table records which step has been applied, so every run
is idempotent. The app lifespan awaits ``run_migrations`` before it starts
accepting traffic. Operators can run the same upgrade with:

    python -m fleet_billing.db.migrations
"""

import asyncio
from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"


def alembic_config(connection: Connection | None = None) -> Config:
    """Build an Alembic config, optionally bound to an open connection."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    if connection is not None:
        config.attributes["connection"] = connection
    return config


def migration_chain() -> list[str]:
    """Revision ids from base to head."""
    script = ScriptDirectory.from_config(alembic_config())
    return [revision.revision for revision in reversed(list(script.walk_revisions()))]


def head_revision() -> str | None:
    return ScriptDirectory.from_config(alembic_config()).get_current_head()


def _upgrade(connection: Connection, target: str) -> None:
    command.upgrade(alembic_config(connection), target)


def _current(connection: Connection) -> str | None:
    return MigrationContext.configure(connection).get_current_revision()


async def current_revision(engine: AsyncEngine) -> str | None:
    async with engine.connect() as conn:
        return await conn.run_sync(_current)


async def run_migrations(engine: AsyncEngine, target: str = "head") -> str | None:
    """Apply every pending revision up to ``target`` and return the resulting revision."""
    before = await current_revision(engine)

    async with engine.begin() as conn:
        await conn.run_sync(_upgrade, target)

    after = await current_revision(engine)
    if before == after:
        logger.info("migrations_up_to_date", revision=after)
    else:
        logger.info("migrations_applied", from_revision=before, to_revision=after)
    return after


async def _main() -> None:
    from fleet_billing.db.base import close_db, init_db

    engine = await init_db()
    try:
        await run_migrations(engine)
    finally:
        await close_db()


if __name__ == "__main__":
    from fleet_billing.core.logging import configure_structlog

    configure_structlog(json_logs=False)
    asyncio.run(_main())
