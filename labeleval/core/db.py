from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

DB_PATH_ENV = "LABELEVAL_DB_PATH"
ALLOW_RESET_ENV = "LABELEVAL_ALLOW_DB_RESET"
MEMORY_DB = ":memory:"
SQLITE_BUSY_TIMEOUT_MS = 5000

_DEFAULT_DB_FILE = Path(__file__).resolve().parents[2] / "labeleval.db"


def _split_sqlite_url(value: str) -> tuple[str, str]:
    """``sqlite:///path?query`` or a bare path -> (path, query)."""
    path, _, query = value.strip().removeprefix("sqlite:///").partition("?")
    return path, query


def _resolve_db_path(raw_db_path: str | None) -> str:
    path, query = _split_sqlite_url(raw_db_path or str(_DEFAULT_DB_FILE))
    if not path:
        path = str(_DEFAULT_DB_FILE)
    if path == MEMORY_DB:
        return MEMORY_DB

    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = _DEFAULT_DB_FILE.parent / candidate
    resolved = str(candidate.resolve())
    return f"{resolved}?{query}" if query else resolved


def _to_sqlite_engine_url(db_path: str) -> str:
    return f"sqlite:///{db_path}"


_DB_PATH = _resolve_db_path(os.getenv(DB_PATH_ENV))
# Pass writes run on the event loop while sync routes read from the threadpool.
_ENGINE = create_engine(
    _to_sqlite_engine_url(_DB_PATH),
    future=True,
    connect_args={"check_same_thread": False},
)


@event.listens_for(_ENGINE, "connect")
def _configure_sqlite_connection(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        if _DB_PATH != MEMORY_DB:
            cursor.execute("PRAGMA journal_mode = WAL")
    finally:
        cursor.close()


SessionLocal = sessionmaker(bind=_ENGINE, autoflush=False, autocommit=False, future=True)


class Base(DeclarativeBase):
    pass


def get_db_path() -> str:
    return _DB_PATH


def is_test_db_path(db_path: str) -> bool:
    path, _ = _split_sqlite_url(db_path)
    return path == MEMORY_DB or Path(path).stem.endswith("_test")


def assert_safe_db_reset() -> None:
    """Refuse destructive resets outside an explicitly enabled ``*_test`` DB."""
    current_db_path = get_db_path()
    if not is_test_db_path(current_db_path):
        raise RuntimeError(f"DB reset blocked: {DB_PATH_ENV} must point to a *_test DB (current: {current_db_path}).")
    if os.getenv(ALLOW_RESET_ENV) != "1":
        raise RuntimeError(f"DB reset blocked: set {ALLOW_RESET_ENV}=1 to reset the test DB.")
