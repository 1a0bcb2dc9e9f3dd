"""Programmatic Alembic entry point."""

from __future__ import annotations

from pathlib import Path

import structlog
from alembic import command
from alembic.config import Config

_log = structlog.get_logger(__name__)

ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"


def build_alembic_config(database_url: str | None = None) -> Config:
    """Return an Alembic config pointing at the bundled migration scripts."""
    cfg = Config()
    cfg.set_main_option("script_location", str(ALEMBIC_DIR))
    if database_url:
        # ConfigParser interpolation treats % specially (URL-encoded passwords)
        cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return cfg


def run_migrations(database_url: str | None = None, revision: str = "head") -> None:
    """
    Upgrade the schema to ``revision``.

    Runs synchronously; env.py swaps async drivers for their sync
    counterparts, so this is safe to call from inside an event loop.
    """
    command.upgrade(build_alembic_config(database_url), revision)
    _log.info("migrations_applied", revision=revision)
