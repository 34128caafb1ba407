from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from fhir_adapter.core.codec import CodecKeyError, CodecService
from fhir_adapter.core.config import Settings
from fhir_adapter.core.errors import ConfigurationError
from fhir_adapter.jobs.poller import CDCPoller, ProcessCallback
from fhir_adapter.jobs.retry import RetryScheduler
from fhir_adapter.jobs.scheduler import CDCScheduler
from fhir_adapter.services.ledger import FailureLedger
from fhir_adapter.services.repository import PostgresRepository
from fhir_adapter.services.watermark import WatermarkStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CDCRuntime:
    watermark: WatermarkStore
    ledger: FailureLedger
    poller: CDCPoller
    retry: RetryScheduler
    scheduler: CDCScheduler


def build_codec(settings: Settings) -> CodecService:
    if not settings.encryption_key:
        raise ConfigurationError("FA_ENCRYPTION_KEY is required to quarantine failed records")
    try:
        return CodecService(settings.encryption_key)
    except CodecKeyError as exc:
        raise ConfigurationError(str(exc)) from exc


def build_cdc_runtime(
    settings: Settings,
    repository: PostgresRepository,
    process: ProcessCallback,
) -> CDCRuntime:
    """Wire the watermark, failure ledger, poller and retry jobs onto one repository."""
    ledger = FailureLedger(
        repository,
        build_codec(settings),
        cooldown=timedelta(seconds=settings.retry_cooldown_seconds),
        retention=settings.failure_retention,
    )
    watermark = WatermarkStore(repository, settings.source_table, settings.watermark_start)
    poller = CDCPoller(watermark, ledger, process, batch_size=settings.poll_batch_size)
    retry = RetryScheduler(ledger, process, batch_size=settings.retry_batch_size)
    scheduler = CDCScheduler(
        poller,
        retry,
        poll_interval=settings.poll_interval_seconds,
        retry_interval=settings.retry_interval_seconds,
    )
    logger.info(
        "cdc runtime ready table=%s poll_interval=%.1fs retry_interval=%.1fs retention=%s",
        settings.source_table,
        settings.poll_interval_seconds,
        settings.retry_interval_seconds,
        settings.failure_retention,
    )
    return CDCRuntime(watermark=watermark, ledger=ledger, poller=poller, retry=retry, scheduler=scheduler)
