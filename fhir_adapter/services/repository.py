from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from fhir_adapter.core.config import get_settings

TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


@dataclass(slots=True, frozen=True, order=True)
class Position:
    """Cursor into the source table, ordered by (timestamp, row id)."""

    timestamp: datetime
    row_id: int = -1

    @classmethod
    def initial(cls, timestamp: datetime = EPOCH) -> Position:
        return cls(timestamp=timestamp, row_id=-1)

    @property
    def has_row(self) -> bool:
        return self.row_id >= 0


@dataclass(slots=True)
class SourceRecord:
    id: int
    timestamp: datetime
    original_timestamp: datetime | None
    natural_key_ref: str | None
    payload: Any

    @property
    def position(self) -> Position:
        return Position(timestamp=self.timestamp, row_id=self.id)


@dataclass(slots=True)
class WatermarkRecord:
    table_name: str
    position: Position
    records_processed: int
    last_error: str | None
    updated_at: datetime | None


@dataclass(slots=True)
class FailureEntry:
    id: int
    source_id: int
    original_timestamp: datetime | None
    attempt_count: int
    last_error: str | None
    last_attempt_at: datetime | None
    created_at: datetime
    encrypted_natural_key: str | None
    encrypted_payload: str
    synced: bool


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        source_table: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        if not TABLE_NAME_RE.match(source_table):
            raise ValueError(f"invalid source table name: {source_table!r}")
        self.database_url = database_url
        self.source_table = source_table
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> bool:
        pool = await self._get_pool()
        value = await pool.fetchval("select 1")
        return value == 1

    async def fetch_rows_after(self, position: Position, limit: int) -> list[SourceRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              s.id::bigint as id,
              s.ingested_at::timestamptz as ingested_at,
              s.time::timestamptz as original_timestamp,
              s.impilo_uid::text as natural_key_ref,
              s.data
            from "{self.source_table}" s
            where s.ingested_at::timestamptz > $1::timestamptz
               or (s.ingested_at::timestamptz = $1::timestamptz and s.id > $2::bigint)
            order by s.ingested_at asc, s.id asc
            limit $3
            """,
            position.timestamp,
            position.row_id,
            limit,
        )
        return [
            SourceRecord(
                id=int(row["id"]),
                timestamp=row["ingested_at"],
                original_timestamp=row["original_timestamp"],
                natural_key_ref=row["natural_key_ref"],
                payload=_decode_json(row["data"]),
            )
            for row in rows
        ]

    async def ensure_watermark(self, table: str, start: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into cdc_watermark (table_name, last_ingested_at)
            values ($1, $2)
            on conflict (table_name) do nothing
            """,
            table,
            start,
        )

    async def read_watermark(self, table: str) -> WatermarkRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select table_name, last_ingested_at, last_processed_id, records_processed, last_error, updated_at
            from cdc_watermark
            where table_name = $1
            """,
            table,
        )
        if row is None:
            return None
        last_id = row["last_processed_id"]
        return WatermarkRecord(
            table_name=row["table_name"],
            position=Position(
                timestamp=row["last_ingested_at"],
                row_id=int(last_id) if last_id is not None else -1,
            ),
            records_processed=int(row["records_processed"] or 0),
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )

    async def advance_watermark(self, table: str, position: Position, count: int) -> None:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update cdc_watermark
            set
              last_ingested_at = $2,
              last_processed_id = $3,
              records_processed = records_processed + $4,
              last_error = null,
              updated_at = now()
            where table_name = $1
            """,
            table,
            position.timestamp,
            position.row_id if position.has_row else None,
            count,
        )
        if status.endswith(" 0"):
            raise RepositoryError(f"no watermark row for table {table!r}")

    async def record_watermark_error(self, table: str, error: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update cdc_watermark set last_error = $2, updated_at = now() where table_name = $1",
            table,
            error,
        )

    async def reset_watermark(self, table: str, timestamp: datetime = EPOCH) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update cdc_watermark
            set last_ingested_at = $2, last_processed_id = null, updated_at = now()
            where table_name = $1
            """,
            table,
            timestamp,
        )

    async def upsert_failure(
        self,
        *,
        source_id: int,
        original_timestamp: datetime | None,
        error: str,
        encrypted_natural_key: str | None,
        encrypted_payload: str,
    ) -> FailureEntry:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into cdc_failed_records (
              source_id,
              original_timestamp,
              last_error,
              encrypted_natural_key,
              encrypted_payload,
              synced,
              created_at,
              last_attempt_at,
              attempt_count
            )
            values ($1, $2, $3, $4, $5, false, now(), now(), 1)
            on conflict (source_id) do update set
              last_error = excluded.last_error,
              last_attempt_at = now(),
              attempt_count = cdc_failed_records.attempt_count + 1,
              encrypted_natural_key = excluded.encrypted_natural_key,
              encrypted_payload = excluded.encrypted_payload,
              synced = false
            returning *
            """,
            source_id,
            original_timestamp,
            error,
            encrypted_natural_key,
            encrypted_payload,
        )
        return self._failure_row_to_entry(row)

    async def fetch_retry_candidates(self, cutoff: datetime, limit: int) -> list[FailureEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select *
            from cdc_failed_records f
            where f.synced = false
              and (f.last_attempt_at is null or f.last_attempt_at <= $1)
            order by f.created_at asc, f.id asc
            limit $2
            """,
            cutoff,
            limit,
        )
        return [self._failure_row_to_entry(row) for row in rows]

    async def get_failure(self, failure_id: int) -> FailureEntry | None:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from cdc_failed_records where id = $1", failure_id)
        return self._failure_row_to_entry(row) if row is not None else None

    async def delete_failure(self, failure_id: int) -> None:
        pool = await self._get_pool()
        await pool.execute("delete from cdc_failed_records where id = $1", failure_id)

    async def update_failure_after_retry(self, failure_id: int, error: str | None, synced: bool) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update cdc_failed_records
            set
              last_error = $2,
              last_attempt_at = now(),
              attempt_count = attempt_count + 1,
              synced = $3
            where id = $1
            """,
            failure_id,
            error,
            synced,
        )

    async def mark_failure_synced(self, failure_id: int, hashed_natural_key: str | None) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update cdc_failed_records
            set encrypted_natural_key = $2, synced = true, last_error = null
            where id = $1
            """,
            failure_id,
            hashed_natural_key,
        )

    async def count_failures(self, *, synced: bool | None = False) -> int:
        pool = await self._get_pool()
        if synced is None:
            value = await pool.fetchval("select count(*) from cdc_failed_records")
        else:
            value = await pool.fetchval("select count(*) from cdc_failed_records where synced = $1", synced)
        return int(value or 0)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FA_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _failure_row_to_entry(row: asyncpg.Record) -> FailureEntry:
        return FailureEntry(
            id=int(row["id"]),
            source_id=int(row["source_id"]),
            original_timestamp=row["original_timestamp"],
            attempt_count=int(row["attempt_count"] or 0),
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            created_at=row["created_at"],
            encrypted_natural_key=row["encrypted_natural_key"],
            encrypted_payload=row["encrypted_payload"],
            synced=bool(row["synced"]),
        )


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        source_table=settings.source_table,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
