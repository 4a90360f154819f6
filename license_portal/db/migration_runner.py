"""
Migration Runner - Runs Alembic migrations at application startup.

Pending migrations are applied before the app accepts requests.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from license_portal.config import settings

logger = get_logger(__name__)

ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def _get_sync_database_url() -> str:
    """Alembic runs on a synchronous driver, so swap asyncpg for psycopg2."""
    return settings.database_url.replace("asyncpg", "psycopg2")


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def _build_config(sync_url: str) -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))
    alembic_cfg.attributes["url_from_runner"] = True
    return alembic_cfg


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Called at application startup. Raises RuntimeError when an upgrade fails.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = _get_sync_database_url()
    try:
        alembic_cfg = _build_config(sync_url)
        engine = create_engine(sync_url)
        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)

            if current == head:
                logger.info("database_schema_up_to_date", revision=current)
                return

            logger.info("running_migrations", current=current, head=head)
            command.upgrade(alembic_cfg, "head")
            logger.info("migrations_complete", revision=_get_current_revision(engine))
        finally:
            engine.dispose()

    except Exception as e:
        logger.error("migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e


def check_migrations_status() -> dict[str, str | bool | None]:
    """Report current/head revisions without applying anything."""
    if not ALEMBIC_INI_PATH.exists():
        return {"error": "Alembic config not found"}

    sync_url = _get_sync_database_url()
    try:
        alembic_cfg = _build_config(sync_url)
        engine = create_engine(sync_url)
        try:
            current = _get_current_revision(engine)
            head = _get_head_revision(alembic_cfg)
            return {
                "current_revision": current,
                "head_revision": head,
                "pending": current != head,
            }
        finally:
            engine.dispose()

    except Exception as e:
        return {"error": str(e)}


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Apply or inspect database migrations")
    parser.add_argument("--check", action="store_true", help="report status without upgrading")
    args = parser.parse_args()

    if args.check:
        for key, value in check_migrations_status().items():
            print(f"{key}: {value}")
    else:
        run_migrations()
