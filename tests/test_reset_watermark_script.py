from __future__ import annotations

import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[1] / "scripts" / "reset_watermark.py"


def _run_script(*args: str) -> str:
    completed = subprocess.run(
        [sys.executable, str(SCRIPT_PATH), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


def test_reset_script_emits_watermark_update() -> None:
    output = _run_script("--table", "sessions", "--since", "2024-01-01T00:00:00")

    assert "update cdc_watermark" in output
    assert "last_ingested_at = '2024-01-01T00:00:00+00:00'::timestamptz" in output
    assert "last_processed_id = null" in output
    assert "where table_name = 'sessions';" in output
    assert "cdc_failed_records" not in output


def test_reset_script_can_clear_unsynced_failures() -> None:
    output = _run_script("--table", "o'neil", "--since", "2024-01-01T00:00:00Z", "--clear-failures")

    assert "where table_name = 'o''neil';" in output
    assert "delete from cdc_failed_records" in output
    assert "where synced = false\n" in output
    assert (
        "and source_id in (select id from \"o'neil\" "
        "where ingested_at::timestamptz > '2024-01-01T00:00:00+00:00'::timestamptz);"
    ) in output
    assert "original_timestamp" not in output


def test_reset_script_quotes_source_table_identifier() -> None:
    output = _run_script("--table", 'odd"name', "--since", "2024-01-01T00:00:00Z", "--clear-failures")

    assert 'select id from "odd""name" where' in output
