"""
Migration Runner - Applies pending Alembic migrations at application startup.

Enabled with RUN_MIGRATIONS_ON_STARTUP. Alembic's command API is
synchronous, so the async URL is rewritten to psycopg2.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from pointledger.config import settings

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


class MigrationError(Exception):
    """Raised when schema migration fails at startup."""

    pass


def sync_database_url(url: str) -> str:
    """Convert an asyncpg URL to its psycopg2 equivalent."""
    return url.replace("+asyncpg", "+psycopg2")


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _alembic_config(url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return alembic_cfg


def run_migrations() -> None:
    """
    Upgrade the schema to head if any revision is pending.

    Raises:
        MigrationError: the upgrade failed; the application must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    url = sync_database_url(settings.database_url)
    alembic_cfg = _alembic_config(url)
    engine = create_engine(url)

    try:
        current = _current_revision(engine)
        head = ScriptDirectory.from_config(alembic_cfg).get_current_head()

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("database_migrations_running", from_revision=current, to_revision=head)
        command.upgrade(alembic_cfg, "head")
        logger.info("database_migrations_complete", revision=_current_revision(engine))

    except Exception as exc:
        logger.error("database_migration_failed", error=str(exc))
        raise MigrationError(f"Database migration failed: {exc}") from exc

    finally:
        engine.dispose()
