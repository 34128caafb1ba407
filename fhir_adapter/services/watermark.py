from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from fhir_adapter.services.repository import EPOCH, Position, SourceRecord, WatermarkRecord

logger = logging.getLogger(__name__)


class WatermarkStorage(Protocol):
    async def ensure_watermark(self, table: str, start: datetime) -> None: ...

    async def read_watermark(self, table: str) -> WatermarkRecord | None: ...

    async def advance_watermark(self, table: str, position: Position, count: int) -> None: ...

    async def record_watermark_error(self, table: str, error: str) -> None: ...

    async def fetch_rows_after(self, position: Position, limit: int) -> list[SourceRecord]: ...


class WatermarkStore:
    """Persisted cursor for one source table.

    Only the poller moves the cursor, and only forwards: ``advance`` rejects any
    position that sorts before the stored one.
    """

    def __init__(self, storage: WatermarkStorage, table_name: str, start: datetime | str | None = None) -> None:
        self.storage = storage
        self.table_name = table_name
        self.start = parse_start(start)

    async def load(self) -> WatermarkRecord:
        record = await self.storage.read_watermark(self.table_name)
        if record is not None:
            return record

        await self.storage.ensure_watermark(self.table_name, self.start)
        record = await self.storage.read_watermark(self.table_name)
        if record is None:
            raise LookupError(f"watermark for {self.table_name!r} could not be initialised")
        logger.info("initialised watermark table=%s start=%s", self.table_name, self.start.isoformat())
        return record

    async def position(self) -> Position:
        return (await self.load()).position

    async def fetch_after(self, position: Position, limit: int) -> list[SourceRecord]:
        return await self.storage.fetch_rows_after(position, limit)

    async def advance(self, position: Position, count: int) -> None:
        current = await self.position()
        if position < current:
            raise ValueError(f"watermark cannot move backwards: {position} < {current}")
        await self.storage.advance_watermark(self.table_name, position, count)

    async def record_error(self, error: str) -> None:
        await self.storage.record_watermark_error(self.table_name, error)


def parse_start(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return EPOCH
    else:
        return EPOCH

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
