from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class WatermarkOut(BaseModel):
    table_name: str
    last_ingested_at: datetime
    last_processed_id: int | None = None
    records_processed: int
    last_error: str | None = None
    updated_at: datetime | None = None


class TaskStatsOut(BaseModel):
    name: str
    interval_seconds: float
    running: bool
    busy: bool
    runs: int
    skipped: int
    failures: int
    last_run_at: datetime | None = None
    last_error: str | None = None


class SchedulerStatsOut(BaseModel):
    enabled: bool
    running: bool
    poll: TaskStatsOut | None = None
    retry: TaskStatsOut | None = None


class CDCStatsOut(BaseModel):
    watermark: WatermarkOut | None = None
    outstanding_failures: int
    total_failures: int
    scheduler: SchedulerStatsOut


class HealthOut(BaseModel):
    status: Literal["healthy", "unhealthy"]
    timestamp: datetime
    connections: dict[str, bool]
    cdc: CDCStatsOut | None = None
    error: str | None = None
