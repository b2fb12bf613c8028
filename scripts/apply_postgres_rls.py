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

from snapwatch.db.postgres import PostgresTxRunner
from snapwatch.db.rls import PostgresRlsManager


def main() -> int:
    parser = argparse.ArgumentParser(description="Create snapwatch tables and apply tenant RLS policies")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help="comma-separated table names; default uses built-in core tables",
    )
    parser.add_argument("--skip-schema", action="store_true", help="only (re)apply RLS policies")
    parser.add_argument("--dry-run", action="store_true", help="print the RLS statements without connecting")
    args = parser.parse_args()

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    tables: list[str] | None = None
    if args.tables.strip():
        tables = [x.strip() for x in args.tables.split(",") if x.strip()]

    if args.dry_run:
        print(json.dumps(PostgresRlsManager(dsn, tables=tables).plan(), ensure_ascii=True, indent=2))
        return 0

    schema_statements = 0 if args.skip_schema else PostgresTxRunner(dsn).apply_schema()
    applied = PostgresRlsManager(dsn, tables=tables).apply()
    print(
        json.dumps(
            {"schema_statements": schema_statements, "applied_tables": applied, "count": len(applied)},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
