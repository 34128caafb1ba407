from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from fhir_adapter.core.config import get_settings
from fhir_adapter.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from fhir_adapter.jobs.runtime import build_cdc_runtime
from fhir_adapter.services.processor import get_processor
from fhir_adapter.services.repository import get_repository

logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Run the poll and retry schedules without the HTTP surface until stopped."""
    settings = get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings)
    repository = get_repository()
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, stop_event.set)

    try:
        runtime = build_cdc_runtime(settings, repository, get_processor())
        runtime.scheduler.start()
        logger.info("cdc worker started table=%s", settings.source_table)
        try:
            await stop_event.wait()
        finally:
            await runtime.scheduler.stop()
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)
        logger.info("cdc worker stopped")


if __name__ == "__main__":
    asyncio.run(run_worker())
