from fastapi import APIRouter, Depends, HTTPException, Request, status

from fhir_adapter.core.config import Settings, get_settings
from fhir_adapter.jobs.runtime import CDCRuntime
from fhir_adapter.jobs.scheduler import TaskStats
from fhir_adapter.schemas.monitoring import CDCStatsOut, SchedulerStatsOut, TaskStatsOut, WatermarkOut
from fhir_adapter.services.repository import PostgresRepository, RepositoryError, get_repository

router = APIRouter()


def get_cdc_runtime(request: Request) -> CDCRuntime | None:
    return getattr(request.app.state, "cdc", None)


@router.get("/stats", response_model=CDCStatsOut)
async def cdc_stats(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    runtime: CDCRuntime | None = Depends(get_cdc_runtime),
) -> CDCStatsOut:
    try:
        return await collect_cdc_stats(repository, settings.source_table, runtime)
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


async def collect_cdc_stats(
    repository: PostgresRepository,
    source_table: str,
    runtime: CDCRuntime | None,
) -> CDCStatsOut:
    record = await repository.read_watermark(source_table)
    watermark = None
    if record is not None:
        watermark = WatermarkOut(
            table_name=record.table_name,
            last_ingested_at=record.position.timestamp,
            last_processed_id=record.position.row_id if record.position.has_row else None,
            records_processed=record.records_processed,
            last_error=record.last_error,
            updated_at=record.updated_at,
        )

    return CDCStatsOut(
        watermark=watermark,
        outstanding_failures=await repository.count_failures(synced=False),
        total_failures=await repository.count_failures(synced=None),
        scheduler=_scheduler_stats(runtime),
    )


def _scheduler_stats(runtime: CDCRuntime | None) -> SchedulerStatsOut:
    if runtime is None:
        return SchedulerStatsOut(enabled=False, running=False)
    tasks = runtime.scheduler.stats()
    return SchedulerStatsOut(
        enabled=True,
        running=runtime.scheduler.is_running,
        poll=_task_out(tasks["poll"]),
        retry=_task_out(tasks["retry"]),
    )


def _task_out(task: TaskStats) -> TaskStatsOut:
    return TaskStatsOut(
        name=task.name,
        interval_seconds=task.interval_seconds,
        running=task.running,
        busy=task.busy,
        runs=task.runs,
        skipped=task.skipped,
        failures=task.failures,
        last_run_at=task.last_run_at,
        last_error=task.last_error,
    )
