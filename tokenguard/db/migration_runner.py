"""
Migration Runner - Bring the ledger schema to the Alembic head at startup.

Alembic runs on a synchronous psycopg2 connection; the service itself uses
asyncpg. Called from the lifespan in a worker thread.
"""

from pathlib import Path

from sqlalchemy import create_engine, pool
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from tokenguard.config import settings

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
MIGRATIONS_DIR = PROJECT_ROOT / "alembic"
ALEMBIC_INI = PROJECT_ROOT / "alembic.ini"


def sync_database_url(url: str | None = None) -> str:
    """DATABASE_URL with the asyncpg driver swapped for psycopg2."""
    url = url or settings.database_url
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    return url.replace("+asyncpg", "+psycopg2")


def alembic_config() -> Config:
    """Alembic config pointing at the bundled migrations and DATABASE_URL."""
    config = Config(str(ALEMBIC_INI)) if ALEMBIC_INI.exists() else Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", sync_database_url().replace("%", "%%"))
    # Keep the service's structlog setup; env.py only configures logging for the CLI
    config.attributes["configure_logger"] = False
    return config


def run_migrations() -> None:
    """
    Upgrade to head when the database is behind.

    Raises:
        RuntimeError: Migration failed (the service must not start)
    """
    if not MIGRATIONS_DIR.is_dir():
        logger.warning("migrations_not_found", path=str(MIGRATIONS_DIR))
        return

    config = alembic_config()
    engine = create_engine(sync_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            current = MigrationContext.configure(connection).get_current_revision()
        head = ScriptDirectory.from_config(config).get_current_head()

        if current == head:
            logger.info("ledger_schema_current", revision=current)
            return

        logger.info("ledger_schema_upgrading", from_revision=current, to_revision=head)
        command.upgrade(config, "head")
        logger.info("ledger_schema_upgraded", revision=head)
    except Exception as e:
        logger.error("ledger_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e
    finally:
        engine.dispose()
