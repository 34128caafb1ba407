from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response, status

from fhir_adapter.api.routes.monitoring import collect_cdc_stats, get_cdc_runtime
from fhir_adapter.core.config import Settings, get_settings
from fhir_adapter.core.errors import describe_error
from fhir_adapter.jobs.runtime import CDCRuntime
from fhir_adapter.schemas.monitoring import HealthOut
from fhir_adapter.services.registry_client import get_registry_client
from fhir_adapter.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health", response_model=HealthOut)
async def health(
    response: Response,
    repository=Depends(get_repository),
    registry=Depends(get_registry_client),
    settings: Settings = Depends(get_settings),
    runtime: CDCRuntime | None = Depends(get_cdc_runtime),
) -> HealthOut:
    timestamp = datetime.now(timezone.utc)
    connections = {"openhim": await registry.test_connection()}
    try:
        connections["database"] = await repository.ping()
        cdc = await collect_cdc_stats(repository, settings.source_table, runtime)
    except RepositoryError as exc:
        connections["database"] = False
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthOut(status="unhealthy", timestamp=timestamp, connections=connections, error=describe_error(exc))

    if not connections["database"]:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthOut(status="unhealthy", timestamp=timestamp, connections=connections, cdc=cdc)
    return HealthOut(status="healthy", timestamp=timestamp, connections=connections, cdc=cdc)
