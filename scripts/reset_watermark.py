#!/usr/bin/env python3
"""Emit SQL that rewinds a CDC watermark for backfill or reprocessing."""

from __future__ import annotations

import argparse
from datetime import datetime, timezone


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _quote_ident(value: str) -> str:
    escaped = value.replace('"', '""')
    return f'"{escaped}"'


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def render_sql(*, table: str, since: datetime, clear_failures: bool) -> str:
    table_value = _quote_sql(table)
    since_value = _quote_sql(since.isoformat())
    statements = [
        "-- CDC watermark reset",
        "-- Rows ingested after the new position are reprocessed on the next poll.",
        "",
        "update cdc_watermark",
        f"set last_ingested_at = {since_value}::timestamptz, last_processed_id = null, last_error = null, updated_at = now()",
        f"where table_name = {table_value};",
    ]
    if clear_failures:
        statements += [
            "",
            "delete from cdc_failed_records",
            "where synced = false",
            f"  and source_id in (select id from {_quote_ident(table)} where ingested_at::timestamptz > {since_value}::timestamptz);",
        ]
    return "\n".join(statements) + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to reset a CDC watermark.")
    parser.add_argument("--table", default="sessions", help="Source table whose watermark is reset")
    parser.add_argument("--since", required=True, help="ISO-8601 timestamp to resume from")
    parser.add_argument(
        "--clear-failures",
        action="store_true",
        help="Also drop unsynced ledger entries for rows the backfill will re-read",
    )
    args = parser.parse_args()

    print(render_sql(table=args.table, since=_parse_timestamp(args.since), clear_failures=args.clear_failures))


if __name__ == "__main__":
    main()
