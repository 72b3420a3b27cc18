from __future__ import annotations

import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv

# Ensure project root is on path and load environment variables
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
load_dotenv(ROOT_DIR / ".env")

from arcomp.config import Settings  # noqa: E402
from arcomp.db.engine import make_engine  # noqa: E402
from arcomp.models import Base  # noqa: E402 - import populates metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

settings = Settings.from_env()
# Percent signs need to be escaped due to ConfigParser interpolation rules.
config.set_main_option("sqlalchemy.url", settings.db_url.replace("%", "%%"))


def _include_object(obj, name, type_, reflected, compare_to) -> bool:
    # SQLite keeps its own bookkeeping tables; never diff them.
    return not (type_ == "table" and name.startswith("sqlite_"))


def run_migrations_offline() -> None:
    """Emit SQL for the configured URL without connecting."""

    context.configure(
        url=settings.db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        include_object=_include_object,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over an engine with the application's lock timeouts."""

    engine = make_engine(
        settings.db_url, statement_timeout_ms=settings.db_statement_timeout_ms
    )
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            include_object=_include_object,
            # SQLite cannot ALTER constraints in place
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
