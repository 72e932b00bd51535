#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from soundpath.db.rls import PostgresRlsManager


def _parse_tables(raw: str) -> dict[str, str] | None:
    if not raw.strip():
        return None
    tables: dict[str, str] = {}
    for item in raw.split(","):
        name, _, owner = item.strip().partition(":")
        if name:
            tables[name.strip()] = owner.strip() or "recipient_user_id"
    return tables


def main() -> int:
    parser = argparse.ArgumentParser(description="Apply PostgreSQL workspace isolation policies")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help="comma-separated table[:owner_column] pairs; default covers tracks, artists and listen_logs",
    )
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    manager = PostgresRlsManager(dsn, tables=_parse_tables(args.tables))
    applied = manager.apply()
    print(json.dumps({"applied_tables": applied, "count": len(applied)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
