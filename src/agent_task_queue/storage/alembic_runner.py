"""Schema migrations for the task database, driven through the Alembic API."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext

from agent_task_queue.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def migration_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the task database at `db_path` up to the latest revision."""

    command.upgrade(migration_config(db_path), "head")
    logger.debug("Task database %s migrated to head", db_path)


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in the database, or None before the first migration."""

    engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=5_000)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()
