"""
Migration Runner - applies pending Alembic migrations at startup.

The consolidation migration must run before any settlement: the service only
knows the canonical ``provider_balance`` column.
"""

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from slotledger.config import settings

logger = get_logger(__name__)

# alembic.ini lives at the project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Where the schema is versus where the scripts are."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def sync_database_url(url: str | None = None) -> str:
    """Alembic's command API is synchronous: swap asyncpg for psycopg2."""
    return (url or settings.database_url).replace("asyncpg", "psycopg2")


def _alembic_config(sync_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    return alembic_cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def migration_status() -> MigrationStatus:
    """Read current/head revisions without applying anything."""
    sync_url = sync_database_url()
    engine = create_engine(sync_url)
    try:
        return MigrationStatus(
            current_revision=_current_revision(engine),
            head_revision=_head_revision(_alembic_config(sync_url)),
        )
    finally:
        engine.dispose()


def run_migrations() -> None:
    """
    Upgrade the schema to head when migrations are pending.

    Raises:
        RuntimeError: The upgrade failed; the service must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = sync_database_url()
    alembic_cfg = _alembic_config(sync_url)
    engine = create_engine(sync_url)
    try:
        current = _current_revision(engine)
        head = _head_revision(alembic_cfg)
        if current == head:
            logger.info("schema_up_to_date", revision=current)
            return

        logger.info("migrations_running", from_revision=current, to_revision=head)
        command.upgrade(alembic_cfg, "head")
        logger.info("migrations_complete", revision=_current_revision(engine))
    except Exception as exc:
        logger.error("migration_failed", error=str(exc))
        raise RuntimeError(f"Database migration failed: {exc}") from exc
    finally:
        engine.dispose()
