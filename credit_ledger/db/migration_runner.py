"""
Migration Runner - Runs Alembic migrations at application startup.

Applies pending migrations when RUN_MIGRATIONS_ON_STARTUP is set. The
Alembic environment drives an async engine, so these helpers are blocking
and must run outside the application's event loop (asyncio.to_thread).
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from credit_ledger.config import settings
from credit_ledger.observability.logging import get_logger

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current and head revision of the ledger schema."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def _alembic_config(database_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return alembic_cfg


def _current_revision_sync(conn: Connection) -> str | None:
    return MigrationContext.configure(conn).get_current_revision()


async def _get_current_revision(database_url: str) -> str | None:
    engine = create_async_engine(database_url)
    try:
        async with engine.connect() as conn:
            return await conn.run_sync(_current_revision_sync)
    finally:
        await engine.dispose()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def check_migrations_status(database_url: str | None = None) -> MigrationStatus:
    """Check migration status without applying anything."""
    url = database_url or settings.database_url
    alembic_cfg = _alembic_config(url)
    return MigrationStatus(
        current_revision=asyncio.run(_get_current_revision(url)),
        head_revision=_get_head_revision(alembic_cfg),
    )


def run_migrations(database_url: str | None = None) -> None:
    """
    Run pending Alembic migrations.

    Only upgrades when the database is behind the newest revision script.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    url = database_url or settings.database_url
    try:
        status = check_migrations_status(url)
        if not status.pending:
            logger.info("database_schema_current", revision=status.current_revision)
            return

        logger.info(
            "database_migration_started",
            from_revision=status.current_revision,
            to_revision=status.head_revision,
        )
        command.upgrade(_alembic_config(url), "head")
        logger.info("database_migration_completed", revision=status.head_revision)

    except Exception as e:
        logger.error("database_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
