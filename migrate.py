#!/usr/bin/env python3
"""
migrate.py  –  restore a poemhouse database from a backup.

• Usage:
      python migrate.py BACKUP [TARGET]

      BACKUP   ← the *old* DB (opened read-only)
      TARGET   ← **must not exist** (will be created);
                 defaults to poemhouse/poemhouse.sqlite3

• Creates the schema poemhouse now ships with and copies only
  columns that still exist.  Extra columns / tables in the
  backup are ignored.

Run once, then start the server as usual.
"""

import sqlite3
import sys
from pathlib import Path

import poemhouse.api as api

# FK parents before children
TABLES_IN_ORDER = ("admin", "poem", "comment", "visit")


def restore(backup: Path, target: Path) -> dict[str, int]:
    """Copy every compatible table from *backup* into a fresh *target*."""
    if not backup.exists():
        raise FileNotFoundError(f"backup not found: {backup}")
    if target.exists():
        raise FileExistsError(f"{target} already exists – move it away first")

    counts: dict[str, int] = {}
    old_db = api.app.config["DATABASE"]
    api.app.config["DATABASE"] = str(target)
    try:
        with api.app.app_context():
            api.init_db()  # writes TARGET to disk
            dst = api.get_db()
            dst.execute("PRAGMA foreign_keys=OFF;")  # easier while bulk-copying
            src = sqlite3.connect(f"file:{backup}?mode=ro", uri=True)
            src.row_factory = sqlite3.Row
            try:
                for table in TABLES_IN_ORDER:
                    counts[table] = _copy_table(src, dst, table)
            finally:
                src.close()
            dst.execute("PRAGMA foreign_keys=ON;")
            dst.commit()
    finally:
        api.app.config["DATABASE"] = old_db
    return counts


def _copy_table(src, dst, table: str) -> int:
    src_cols = {c["name"] for c in src.execute(f"PRAGMA table_info({table})")}
    if not src_cols:
        print(f"  • {table:8}  (absent in backup – skipped)")
        return 0

    dst_cols = [c["name"] for c in dst.execute(f"PRAGMA table_info({table})")]
    common = [c for c in dst_cols if c in src_cols]
    if not common:
        print(f"  • {table:8}  (no common columns – skipped)")
        return 0

    col_list = ",".join(common)
    qms = ",".join("?" * len(common))
    rows = src.execute(f"SELECT {col_list} FROM {table}")
    dst.executemany(
        f"INSERT INTO {table} ({col_list}) VALUES ({qms})",
        (tuple(r[c] for c in common) for r in rows),
    )
    cnt = dst.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    print(f"  • {table:8}  ({cnt} rows)")
    return cnt


def main(argv: list[str]) -> int:
    if not argv:
        print(__doc__)
        return 2
    backup = Path(argv[0])
    target = Path(argv[1]) if len(argv) > 1 else api.DB_FILE

    print("• backup →", backup)
    print("• target →", target)
    try:
        restore(backup, target)
    except (FileNotFoundError, FileExistsError) as exc:
        print(f"❌  {exc}")
        return 1

    print("\n✔  Restore finished – start the app with the new database.")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
