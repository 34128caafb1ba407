from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

import pytest

os.environ.setdefault("FA_OTEL_ENABLED", "false")
os.environ.setdefault("FA_SCHEDULER_ENABLED", "false")

from fhir_adapter.core.codec import CodecService  # noqa: E402
from fhir_adapter.services.repository import (  # noqa: E402
    FailureEntry,
    Position,
    RepositoryError,
    SourceRecord,
    WatermarkRecord,
)

TEST_KEY = "0123456789abcdef0123456789abcdef"
BASE_TIME = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def session_payload(uid: str, **fields: Any) -> dict[str, Any]:
    entries = {name: {"values": {"value": [value]}} for name, value in fields.items()}
    return {"data": {"uid": uid, "script": {"id": "admission"}, "entries": entries}}


def make_row(
    row_id: int,
    timestamp: datetime = BASE_TIME,
    payload: Any = None,
    natural_key: str | None = None,
) -> SourceRecord:
    return SourceRecord(
        id=row_id,
        timestamp=timestamp,
        original_timestamp=timestamp,
        natural_key_ref=natural_key,
        payload=payload if payload is not None else session_payload(f"uid-{row_id}"),
    )


class FakeRepository:
    """In-memory storage collaborator with the same contract as PostgresRepository."""

    def __init__(self, rows: list[SourceRecord] | None = None) -> None:
        self.rows: list[SourceRecord] = list(rows or [])
        self.watermarks: dict[str, WatermarkRecord] = {}
        self.failures: dict[int, FailureEntry] = {}
        self.now = BASE_TIME
        self.healthy = True
        self.fail_fetch = False
        self.fail_advance = False
        self.fail_upsert = False
        self.closed = False
        self._next_failure_id = 1

    async def ping(self) -> bool:
        if not self.healthy:
            raise RepositoryError("database unavailable")
        return True

    async def close(self) -> None:
        self.closed = True

    async def fetch_rows_after(self, position: Position, limit: int) -> list[SourceRecord]:
        if self.fail_fetch:
            raise RepositoryError("read failed")
        ordered = sorted(self.rows, key=lambda row: row.position)
        return [row for row in ordered if row.position > position][:limit]

    async def ensure_watermark(self, table: str, start: datetime) -> None:
        self.watermarks.setdefault(
            table,
            WatermarkRecord(
                table_name=table,
                position=Position.initial(start),
                records_processed=0,
                last_error=None,
                updated_at=None,
            ),
        )

    async def read_watermark(self, table: str) -> WatermarkRecord | None:
        return self.watermarks.get(table)

    async def advance_watermark(self, table: str, position: Position, count: int) -> None:
        if self.fail_advance:
            raise RepositoryError("write failed")
        record = self.watermarks.get(table)
        if record is None:
            raise RepositoryError(f"no watermark row for table {table!r}")
        record.position = position
        record.records_processed += count
        record.last_error = None
        record.updated_at = self.now

    async def record_watermark_error(self, table: str, error: str) -> None:
        record = self.watermarks.get(table)
        if record is not None:
            record.last_error = error
            record.updated_at = self.now

    async def upsert_failure(
        self,
        *,
        source_id: int,
        original_timestamp: datetime | None,
        error: str,
        encrypted_natural_key: str | None,
        encrypted_payload: str,
    ) -> FailureEntry:
        if self.fail_upsert:
            raise RepositoryError("ledger write failed")
        for entry in self.failures.values():
            if entry.source_id == source_id:
                entry.last_error = error
                entry.last_attempt_at = self.now
                entry.attempt_count += 1
                entry.encrypted_natural_key = encrypted_natural_key
                entry.encrypted_payload = encrypted_payload
                entry.synced = False
                return entry

        entry = FailureEntry(
            id=self._next_failure_id,
            source_id=source_id,
            original_timestamp=original_timestamp,
            attempt_count=1,
            last_error=error,
            last_attempt_at=self.now,
            created_at=self.now,
            encrypted_natural_key=encrypted_natural_key,
            encrypted_payload=encrypted_payload,
            synced=False,
        )
        self.failures[entry.id] = entry
        self._next_failure_id += 1
        return entry

    async def fetch_retry_candidates(self, cutoff: datetime, limit: int) -> list[FailureEntry]:
        eligible = [
            entry
            for entry in self.failures.values()
            if not entry.synced and (entry.last_attempt_at is None or entry.last_attempt_at <= cutoff)
        ]
        eligible.sort(key=lambda entry: (entry.created_at, entry.id))
        return eligible[:limit]

    async def get_failure(self, failure_id: int) -> FailureEntry | None:
        return self.failures.get(failure_id)

    async def delete_failure(self, failure_id: int) -> None:
        self.failures.pop(failure_id, None)

    async def update_failure_after_retry(self, failure_id: int, error: str | None, synced: bool) -> None:
        entry = self.failures[failure_id]
        entry.last_error = error
        entry.last_attempt_at = self.now
        entry.attempt_count += 1
        entry.synced = synced

    async def mark_failure_synced(self, failure_id: int, hashed_natural_key: str | None) -> None:
        entry = self.failures[failure_id]
        entry.encrypted_natural_key = hashed_natural_key
        entry.synced = True
        entry.last_error = None

    async def count_failures(self, *, synced: bool | None = False) -> int:
        if synced is None:
            return len(self.failures)
        return sum(1 for entry in self.failures.values() if entry.synced is synced)


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def codec() -> CodecService:
    return CodecService(TEST_KEY)
