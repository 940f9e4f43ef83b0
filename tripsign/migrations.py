"""Versioned schema evolution, applied once at startup.

The revision list lives in ``alembic/versions``; ``upgrade_database`` runs it
against the configured database (or an explicit URL) up to ``head``.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine

from tripsign.core.settings import settings

logger = logging.getLogger("tripsign.migrations")

PROJECT_ROOT = Path(__file__).resolve().parent.parent
ALEMBIC_INI = PROJECT_ROOT / "alembic.ini"
SCRIPT_LOCATION = PROJECT_ROOT / "alembic"


def alembic_config(database_url: Optional[str] = None) -> Config:
    cfg = Config(str(ALEMBIC_INI)) if ALEMBIC_INI.exists() else Config()
    cfg.set_main_option("script_location", str(SCRIPT_LOCATION))
    # ConfigParser interpolation: a literal % in passwords must be doubled.
    cfg.set_main_option("sqlalchemy.url", (database_url or settings.database_url).replace("%", "%%"))
    # Logging is owned by setup_logging(); keep env.py from reconfiguring it.
    cfg.attributes["configure_logger"] = False
    return cfg


def head_revision() -> str:
    return ScriptDirectory.from_config(alembic_config()).get_current_head()


def current_revision(database_url: Optional[str] = None) -> Optional[str]:
    engine = create_engine(database_url or settings.database_url)
    try:
        with engine.connect() as conn:
            return MigrationContext.configure(conn).get_current_revision()
    finally:
        engine.dispose()


def upgrade_database(database_url: Optional[str] = None, revision: str = "head") -> None:
    logger.info(f"Applying schema migrations up to {revision}")
    command.upgrade(alembic_config(database_url), revision)
    logger.info("Schema migrations applied")
