"""Database utilities for the PDF viewer service."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlmodel import SQLModel, create_engine

from . import config as config_module
from .config import PROJECT_ROOT

_engine = None


def _enable_sqlite_wal(dbapi_connection, connection_record) -> None:  # noqa: ANN001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def get_engine():
    """Return a SQLModel engine using configured settings."""

    global _engine
    if _engine is None:
        settings = config_module.get_settings()
        database_url = settings.database_url
        url = make_url(database_url)
        is_sqlite = url.get_backend_name() == "sqlite"
        connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}

        if is_sqlite:
            database = url.database
            if database and database != ":memory:":
                db_path = Path(database)
                if not db_path.is_absolute():
                    db_path = (PROJECT_ROOT / db_path).resolve()
                db_path.parent.mkdir(parents=True, exist_ok=True)
                url = url.set(database=str(db_path))
                database_url = url.render_as_string(hide_password=False)

        _engine = create_engine(database_url, connect_args=connect_args)
        if is_sqlite and url.database and url.database != ":memory:":
            # Page workers write concurrently from several threads.
            event.listen(_engine, "connect", _enable_sqlite_wal)
    return _engine


def init_db() -> None:
    """Initialise database tables."""

    from .models import document, page, run  # noqa: F401  Registers models with SQLModel metadata.

    engine = get_engine()
    SQLModel.metadata.create_all(engine)


def reset_database_state() -> None:
    """Dispose of the cached engine (useful for tests)."""

    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None
