#  HDR Backend - Migration Runner
#
#  Programmatic Alembic runner for applying migrations at startup.
#  Revisions apply in order, each recorded once in alembic_version.
#  Databases created from the inline schema are stamped at head.
#
#  Depends on: hdr_backend/migrations/
#  Used by:    hdr_backend/db/connection.py

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

logger = logging.getLogger("hdr.migrate")

_MIGRATIONS_DIR = Path(__file__).parent.parent / "migrations"


def _alembic_config(url: str) -> Config:
    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(_MIGRATIONS_DIR))
    alembic_cfg.set_main_option("sqlalchemy.url", url)
    return alembic_cfg


def run_migrations(db_path: str | Path) -> None:
    """Apply pending Alembic migrations to the database.

    Handles three cases:
    1. Fresh database: runs all migrations from scratch.
    2. Unversioned database (tables from the inline schema, no alembic_version):
       stamped at head, since the inline schema tracks the latest revision.
    3. Already-migrated database: runs only pending migrations.
    """
    db_path = Path(db_path)
    url = f"sqlite:///{db_path}"
    alembic_cfg = _alembic_config(url)

    engine = create_engine(url)
    try:
        with engine.connect():
            tables = inspect(engine).get_table_names()

            has_schema = "orders" in tables
            has_alembic = "alembic_version" in tables

            if has_schema and not has_alembic:
                logger.info("Unversioned database detected, stamping at head")
                command.stamp(alembic_cfg, "head")
            elif not has_schema and not has_alembic:
                logger.info("Fresh database, running all migrations")

        command.upgrade(alembic_cfg, "head")
        logger.info("Migrations complete (head)")
    finally:
        engine.dispose()
