from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fhir_adapter.core.errors import describe_error
from fhir_adapter.jobs.poller import CDCPoller
from fhir_adapter.jobs.retry import RetryScheduler

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 0.01


@dataclass(slots=True)
class TaskStats:
    name: str
    interval_seconds: float
    running: bool
    busy: bool
    runs: int
    skipped: int
    failures: int
    last_run_at: datetime | None
    last_error: str | None


class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds, one run at a time.

    The first run starts immediately. A tick that finds the previous run still
    in flight is skipped rather than stacked.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self.name = name
        self.interval = max(MIN_INTERVAL_SECONDS, float(interval))
        self.callback = callback
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._run_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("started periodic task name=%s interval=%.1fs", self.name, self.interval)

    def tick(self) -> bool:
        if self.busy:
            self.skipped += 1
            logger.debug("previous %s run still active, skipping tick", self.name)
            return False
        self._run_task = asyncio.create_task(self._run(), name=f"periodic:{self.name}:run")
        return True

    async def stop(self) -> None:
        """Stop ticking, then wait for an in-flight run to finish on its own."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if self._run_task is not None:
            if not self._run_task.done():
                logger.info("waiting for in-flight %s run to finish", self.name)
            await self._run_task
            self._run_task = None

    def stats(self) -> TaskStats:
        return TaskStats(
            name=self.name,
            interval_seconds=self.interval,
            running=self.running,
            busy=self.busy,
            runs=self.runs,
            skipped=self.skipped,
            failures=self.failures,
            last_run_at=self.last_run_at,
            last_error=self.last_error,
        )

    async def _loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    async def _run(self) -> None:
        try:
            await self.callback()
            self.last_error = None
        except Exception as exc:
            self.failures += 1
            self.last_error = describe_error(exc)
            logger.exception("%s run failed: %s", self.name, self.last_error)
        finally:
            self.runs += 1
            self.last_run_at = datetime.now(timezone.utc)


class CDCScheduler:
    """Owns the poll and retry schedules.

    The two schedules are independent of each other and may overlap; each
    guards only against overlapping with itself.
    """

    def __init__(
        self,
        poller: CDCPoller,
        retry: RetryScheduler,
        *,
        poll_interval: float,
        retry_interval: float,
    ) -> None:
        self.poll_task = PeriodicTask("cdc-poll", poll_interval, poller.poll_once)
        self.retry_task = PeriodicTask("cdc-retry", retry_interval, retry.retry_once)

    @property
    def is_running(self) -> bool:
        return self.poll_task.running or self.retry_task.running

    def start(self) -> None:
        self.poll_task.start()
        self.retry_task.start()

    async def stop(self) -> None:
        await asyncio.gather(self.poll_task.stop(), self.retry_task.stop())
        logger.info("cdc scheduler stopped")

    def stats(self) -> dict[str, TaskStats]:
        return {"poll": self.poll_task.stats(), "retry": self.retry_task.stats()}
