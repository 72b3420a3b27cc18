from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from arcomp.config import Settings
from arcomp.db.engine import make_engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ACTIVE_CART_INDEX = "uq_registration_carts_user_active"


def upgrade_db(target_revision: str = "head") -> None:
    """Apply Alembic migrations up to the requested revision."""
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    command.upgrade(alembic_cfg, target_revision)


def print_tables(settings: Settings) -> None:
    """Print the tables present in the configured database.

    Also warns when the one-ACTIVE-cart-per-user index is missing, which is the
    case for databases created before it existed.
    """
    engine = make_engine(settings.db_url)
    try:
        insp = inspect(engine)
        tables = sorted(insp.get_table_names())
        print("Current tables:", ", ".join(tables))
        if "registration_carts" in tables:
            names = {ix["name"] for ix in insp.get_indexes("registration_carts")}
            if ACTIVE_CART_INDEX not in names:
                logger.warning(f"Index {ACTIVE_CART_INDEX} is missing")
    finally:
        engine.dispose()


def main() -> None:
    """Apply migrations (default to head) and report the resulting schema."""
    logging.basicConfig(level=logging.INFO)
    settings = Settings.from_env()
    upgrade_db()
    print_tables(settings)


if __name__ == "__main__":
    main()
