#!/usr/bin/env python3
"""Run Meridian database bootstrap/migrations and print a quick table summary."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.db import DATABASE_URL, DB_BACKEND, DB_PATH, db_connect, ensure_bootstrap

TABLES = (
    "organizations",
    "users",
    "memberships",
    "projects",
    "results_nodes",
    "indicators",
    "indicator_periods",
    "submissions",
    "form_links",
    "datasets",
    "visualizations",
    "calendar_events",
    "sessions",
)


def main() -> int:
    ensure_bootstrap()
    conn = db_connect()
    try:
        counts = {table: int(conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]) for table in TABLES}
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("backend:", DB_BACKEND)
    if DB_BACKEND == "postgres":
        print("database_url_set:", bool(DATABASE_URL))
    else:
        print("db_path:", DB_PATH)
    print("counts:", counts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
