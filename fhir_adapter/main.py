from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from fhir_adapter.api.router import api_router
from fhir_adapter.core.config import get_settings
from fhir_adapter.core.errors import AdapterError
from fhir_adapter.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from fhir_adapter.jobs.runtime import build_cdc_runtime
from fhir_adapter.services.processor import get_processor
from fhir_adapter.services.repository import RepositoryUnavailableError, get_repository

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    current = get_settings()
    configure_logging(current)
    telemetry_runtime = setup_telemetry(current)
    app.state.cdc = None
    if current.scheduler_enabled:
        app.state.cdc = build_cdc_runtime(current, get_repository(), get_processor())
        app.state.cdc.scheduler.start()
    else:
        logger.info("cdc scheduler disabled; serving api only")

    try:
        yield
    finally:
        # In-flight cycles finish before the pool goes away.
        if app.state.cdc is not None:
            await app.state.cdc.scheduler.stop()
        shutdown_telemetry(telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(AdapterError)
async def adapter_error_handler(_: Request, exc: AdapterError) -> JSONResponse:
    logger.warning("request failed code=%s message=%s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RepositoryUnavailableError)
async def repository_unavailable_handler(_: Request, exc: RepositoryUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "DATABASE_UNAVAILABLE", "message": str(exc), "context": {}})


app.include_router(api_router)
