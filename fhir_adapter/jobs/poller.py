from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from fhir_adapter.core.errors import describe_error
from fhir_adapter.services.ledger import FailureLedger
from fhir_adapter.services.repository import Position, SourceRecord
from fhir_adapter.services.translator import to_entry
from fhir_adapter.services.watermark import WatermarkStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ProcessCallback = Callable[[dict[str, Any]], Awaitable[Any]]

DEFAULT_POLL_BATCH_SIZE = 100


@dataclass(slots=True)
class BatchResult:
    total: int
    succeeded: int
    failed: int
    position: Position | None


class CDCPoller:
    def __init__(
        self,
        watermark: WatermarkStore,
        ledger: FailureLedger,
        process: ProcessCallback,
        *,
        batch_size: int = DEFAULT_POLL_BATCH_SIZE,
    ) -> None:
        self.watermark = watermark
        self.ledger = ledger
        self.process = process
        self.batch_size = max(1, batch_size)

    async def poll_once(self) -> BatchResult:
        """Process one batch past the watermark and advance it.

        Row failures go to the failure ledger and still count towards
        ``records_processed``; the watermark always moves to the last row of a
        non-empty batch. Storage errors, including a failed ledger write,
        propagate and leave the cursor untouched.
        """
        with tracer.start_as_current_span("cdc.poll_cycle") as span:
            current = await self.watermark.position()
            rows = await self.watermark.fetch_after(current, self.batch_size)
            span.set_attribute("cdc.batch_size", len(rows))
            if not rows:
                return BatchResult(total=0, succeeded=0, failed=0, position=None)

            succeeded = 0
            failed = 0
            for row in rows:
                if await self._process_row(row):
                    succeeded += 1
                else:
                    failed += 1

            last = max(row.position for row in rows)
            try:
                await self.watermark.advance(last, len(rows))
            except Exception as exc:
                await self._record_watermark_error(exc)
                raise

            logger.info(
                "batch completed total=%s success=%s failed=%s watermark=%s/%s",
                len(rows),
                succeeded,
                failed,
                last.timestamp.isoformat(),
                last.row_id,
            )
            return BatchResult(total=len(rows), succeeded=succeeded, failed=failed, position=last)

    async def _process_row(self, row: SourceRecord) -> bool:
        with tracer.start_as_current_span("cdc.process_record") as span:
            span.set_attribute("cdc.source_id", row.id)
            try:
                entry = to_entry(row.payload, row.natural_key_ref)
                await self.process(entry)
                return True
            except Exception as exc:
                error = describe_error(exc)
                logger.error("failed to process source_id=%s: %s", row.id, error)

        # a ledger write failure aborts the cycle so the row is replayed next tick
        await self.ledger.record_failure(
            source_id=row.id,
            original_timestamp=row.original_timestamp,
            error=error,
            natural_key=row.natural_key_ref,
            payload=row.payload,
        )
        return False

    async def _record_watermark_error(self, exc: Exception) -> None:
        try:
            await self.watermark.record_error(describe_error(exc))
        except Exception:
            logger.exception("failed to record watermark error for table=%s", self.watermark.table_name)
