"""Compare the configured database against the ORM models.

Exit status: 0 when in sync, 1 when differences exist, 2 on error.
"""

from __future__ import annotations

import logging
import sys

from alembic.autogenerate import api as ag_api
from alembic.runtime.migration import MigrationContext
from sqlalchemy.exc import SQLAlchemyError

from arcomp.config import Settings
from arcomp.db.engine import make_engine
from arcomp.models import Base

logger = logging.getLogger(__name__)


def _print_ops(ops, indent: int = 0) -> None:
    prefix = "  " * indent
    for op in ops:
        print(f"{prefix}- {op}")
        sub_ops = getattr(op, "ops", None)
        if sub_ops:
            _print_ops(sub_ops, indent + 1)


def main() -> int:
    logging.basicConfig(level=logging.WARNING)
    settings = Settings.from_env()
    engine = make_engine(settings.db_url, statement_timeout_ms=settings.db_statement_timeout_ms)
    url_display = engine.url.render_as_string(hide_password=True)
    try:
        with engine.connect() as connection:
            context = MigrationContext.configure(
                connection=connection,
                opts={
                    "compare_type": True,
                    "render_as_batch": connection.dialect.name == "sqlite",
                },
            )
            upgrade_ops = ag_api.produce_migrations(context, Base.metadata).upgrade_ops
    except SQLAlchemyError as exc:
        logger.error(f"Schema drift check failed for {url_display}: {exc}")
        return 2
    finally:
        engine.dispose()

    if upgrade_ops is None:
        print(f"Schema drift check: ERROR for {url_display}: missing upgrade ops.")
        return 2
    if upgrade_ops.is_empty():
        print(f"Schema drift check: OK (no differences) for {url_display}.")
        return 0
    print(f"Schema drift check: FAILED for {url_display}. Differences detected:")
    _print_ops(upgrade_ops.ops or [])
    return 1


if __name__ == "__main__":
    sys.exit(main())
