from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from fhir_adapter.core.config import Settings

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s facility=%(facility_id)s table=%(cdc_table)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
)

SOURCE_TABLE_ATTRIBUTE = "cdc.source_table"
FACILITY_ID_ATTRIBUTE = "fhir.facility.id"
FACILITY_NAME_ATTRIBUTE = "fhir.facility.name"
SOURCE_SYSTEM_ATTRIBUTE = "fhir.source_id"
REGISTRY_CLIENT_ATTRIBUTE = "fhir.registry.client_id"

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CONTEXT: dict[str, str] = {"facility_id": "-", "cdc_table": "-"}
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_logging(settings: Settings) -> None:
    """Tag every log record with the facility, source table and active span.

    A root handler is only installed when none exists yet, so test runners and
    uvicorn keep their own handlers.
    """
    _LOG_CONTEXT["facility_id"] = settings.facility_id
    _LOG_CONTEXT["cdc_table"] = settings.source_table
    _install_log_correlation()
    resolved = logging.getLevelName(settings.log_level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(resolved)
        return
    logging.basicConfig(level=resolved, format=LOG_FORMAT)


def build_resource(settings: Settings) -> Resource:
    """Describe this adapter instance: which facility it serves and which table it tails."""
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name or settings.app_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            SOURCE_TABLE_ATTRIBUTE: settings.source_table,
            FACILITY_ID_ATTRIBUTE: settings.facility_id,
            FACILITY_NAME_ATTRIBUTE: settings.facility_name,
            SOURCE_SYSTEM_ATTRIBUTE: settings.source_id,
            REGISTRY_CLIENT_ATTRIBUTE: settings.registry_client_id,
        }
    )


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    ratio = min(1.0, max(0.0, settings.otel_trace_sample_ratio))
    provider = TracerProvider(resource=build_resource(settings), sampler=TraceIdRatioBased(ratio))
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # Registry calls go through httpx; instrumenting it links them to the poll/retry spans.
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def resolve_otlp_endpoint(settings: Settings) -> str | None:
    return (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        or None
    )


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = resolve_otlp_endpoint(settings)
    if endpoint is None:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; cdc spans stay in-process facility=%s table=%s",
            settings.facility_id,
            settings.source_table,
        )
        return None

    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without a key or ``=`` are dropped."""
    if not raw:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        record.facility_id = _LOG_CONTEXT["facility_id"]
        record.cdc_table = _LOG_CONTEXT["cdc_table"]
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
