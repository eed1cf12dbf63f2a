from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import text

from labeleval.core import db as db_core

PROJECT_ROOT = Path(__file__).resolve().parents[1]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("./labeleval_test.db", str(PROJECT_ROOT / "labeleval_test.db")),
        ("sqlite:///data/runs.db", str(PROJECT_ROOT / "data" / "runs.db")),
        ("sqlite:///./labeleval_test.db?mode=ro", f"{PROJECT_ROOT / 'labeleval_test.db'}?mode=ro"),
        (":memory:", ":memory:"),
        ("", str(PROJECT_ROOT / "labeleval.db")),
        (None, str(PROJECT_ROOT / "labeleval.db")),
    ],
)
def test_resolve_db_path(raw, expected):
    assert db_core._resolve_db_path(raw) == expected


def test_absolute_path_is_kept(tmp_path):
    target = tmp_path / "elsewhere.db"
    assert db_core._resolve_db_path(str(target)) == str(target.resolve())


def test_reset_guard_recognises_test_databases():
    assert db_core.is_test_db_path("/tmp/labeleval_test.db")
    assert db_core.is_test_db_path("/tmp/labeleval_test.db?mode=ro")
    assert db_core.is_test_db_path(":memory:")
    assert not db_core.is_test_db_path("/tmp/labeleval.db")


def test_reset_guard_requires_opt_in(monkeypatch):
    monkeypatch.setenv(db_core.ALLOW_RESET_ENV, "0")
    with pytest.raises(RuntimeError, match="LABELEVAL_ALLOW_DB_RESET"):
        db_core.assert_safe_db_reset()


def test_connections_wait_on_locked_database():
    with db_core._ENGINE.connect() as connection:
        busy_timeout = connection.execute(text("PRAGMA busy_timeout")).scalar()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar()

    assert busy_timeout == db_core.SQLITE_BUSY_TIMEOUT_MS
    assert str(journal_mode).lower() == "wal"
