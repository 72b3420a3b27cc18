import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .utils import resolve_sqlite_url

# Get DB url
load_dotenv()
# Project root directory (repo root)
ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_SQLITE_URL = resolve_sqlite_url(
    os.getenv("DB_URL", "sqlite:///./dev.db"), ROOT_DIR
)
DEFAULT_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))


def make_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    statement_timeout_ms: Optional[int] = None,
    **kwargs,
):
    """Create an engine whose connections never wait on locks indefinitely.

    SQLite gets a busy timeout and enforced foreign keys; PostgreSQL gets a
    ``statement_timeout`` and ``lock_timeout``. Extra keyword arguments are
    passed to :func:`sqlalchemy.create_engine` (tests use this for
    ``poolclass``).
    """
    url = database_url or DEFAULT_SQLITE_URL
    timeout_ms = (
        DEFAULT_STATEMENT_TIMEOUT_MS
        if statement_timeout_ms is None
        else statement_timeout_ms
    )

    connect_args = dict(kwargs.pop("connect_args", {}))
    if url.startswith("sqlite"):
        connect_args.setdefault("timeout", timeout_ms / 1000)
        connect_args.setdefault("check_same_thread", False)
    elif url.startswith("postgresql"):
        connect_args.setdefault(
            "options",
            f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
        )

    engine = create_engine(
        url,
        echo=echo,
        future=True,
        connect_args=connect_args,
        **kwargs,
    )
    if url.startswith("sqlite"):
        # ensure FK constraints are enforced on SQLite, and take over BEGIN from
        # pysqlite so SAVEPOINTs nest inside the real transaction
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def get_sessionmaker(engine):
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,  # Keep objects accessible after commit for response building
        future=True,
    )
