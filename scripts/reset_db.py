from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from sqlalchemy import func, select

from labeleval.core.db import ALLOW_RESET_ENV, Base, SessionLocal, _ENGINE, assert_safe_db_reset, get_db_path
from labeleval.models import dataset, evaluation, evaluation_result, prompt  # noqa: F401


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Drop and recreate the label evaluation schema. Only *_test databases are accepted."
    )
    parser.add_argument("--allow-db-reset", action="store_true", help="Required. Confirms the destructive reset.")
    parser.add_argument("--dry-run", action="store_true", help="Only print how many rows each table holds.")
    return parser.parse_args()


def _row_counts() -> dict[str, int]:
    Base.metadata.create_all(_ENGINE)
    db = SessionLocal()
    try:
        return {
            table.name: int(db.execute(select(func.count()).select_from(table)).scalar() or 0)
            for table in Base.metadata.sorted_tables
        }
    finally:
        db.close()


def main() -> None:
    args = _parse_args()
    if not args.allow_db_reset:
        raise SystemExit("Reset blocked: pass --allow-db-reset to continue.")

    os.environ[ALLOW_RESET_ENV] = "1"
    assert_safe_db_reset()

    for table_name, count in _row_counts().items():
        print(f"{table_name}: {count} row(s)")
    if args.dry_run:
        return

    Base.metadata.drop_all(_ENGINE)
    Base.metadata.create_all(_ENGINE)
    print(f"Reset complete: {get_db_path()}")


if __name__ == "__main__":
    main()
