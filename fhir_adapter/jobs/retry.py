from __future__ import annotations

import logging
from dataclasses import dataclass

from opentelemetry import trace

from fhir_adapter.core.errors import describe_error
from fhir_adapter.jobs.poller import ProcessCallback
from fhir_adapter.services.ledger import FailureLedger
from fhir_adapter.services.repository import FailureEntry
from fhir_adapter.services.translator import to_entry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_RETRY_BATCH_SIZE = 50


@dataclass(slots=True)
class RetryResult:
    total: int
    succeeded: int
    failed: int


class RetryScheduler:
    """Re-drives eligible failure ledger entries through the processing callback.

    Works independently of the poll cursor. Entries are retried without an
    attempt limit; an entry that never succeeds stays in the ledger.
    """

    def __init__(
        self,
        ledger: FailureLedger,
        process: ProcessCallback,
        *,
        batch_size: int = DEFAULT_RETRY_BATCH_SIZE,
    ) -> None:
        self.ledger = ledger
        self.process = process
        self.batch_size = max(1, batch_size)

    async def retry_once(self) -> RetryResult:
        with tracer.start_as_current_span("cdc.retry_cycle") as span:
            candidates = await self.ledger.get_retry_candidates(self.batch_size)
            span.set_attribute("cdc.retry_candidates", len(candidates))
            if not candidates:
                return RetryResult(total=0, succeeded=0, failed=0)

            succeeded = 0
            for entry in candidates:
                if await self._retry_entry(entry):
                    succeeded += 1

            failed = len(candidates) - succeeded
            logger.info("retry cycle completed total=%s success=%s failed=%s", len(candidates), succeeded, failed)
            return RetryResult(total=len(candidates), succeeded=succeeded, failed=failed)

    async def _retry_entry(self, entry: FailureEntry) -> bool:
        with tracer.start_as_current_span("cdc.retry_record") as span:
            span.set_attribute("cdc.failure_id", entry.id)
            span.set_attribute("cdc.source_id", entry.source_id)
            span.set_attribute("cdc.attempt_count", entry.attempt_count)
            try:
                recovered = self.ledger.decrypt(entry)
                await self.process(to_entry(recovered.payload, recovered.natural_key))
            except Exception as exc:
                error = describe_error(exc)
                logger.warning(
                    "retry failed id=%s source_id=%s attempts=%s: %s",
                    entry.id,
                    entry.source_id,
                    entry.attempt_count,
                    error,
                )
                await self.ledger.mark_retry_failure(entry, error)
                return False

            await self.ledger.mark_retry_success(entry, recovered.natural_key)
            return True
