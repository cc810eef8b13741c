# src/ag_gateway/scripts/migrate.py
from __future__ import annotations
import os
from alembic import command
from alembic.config import Config

from ag_gateway.core.settings import settings

_MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), "..", "..", "..", "migrations")


def run_upgrade_head() -> None:
    # No alembic.ini: everything the environment needs is set here.
    cfg = Config()
    cfg.set_main_option("script_location", os.path.abspath(_MIGRATIONS_DIR))
    cfg.set_main_option("sqlalchemy.url", settings.effective_database_url)
    command.upgrade(cfg, "head")


if __name__ == "__main__":
    run_upgrade_head()
