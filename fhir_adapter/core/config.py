from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "fhir-cdc-adapter"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    source_table: str = "sessions"
    watermark_start: str = "1970-01-01T00:00:00"
    poll_interval_seconds: float = 30.0
    poll_batch_size: int = 100
    retry_interval_seconds: float = 300.0
    retry_cooldown_seconds: float = 300.0
    retry_batch_size: int = 50
    failure_retention: Literal["audit", "purge"] = "audit"
    scheduler_enabled: bool = True
    encryption_key: str | None = None
    decision_rules_path: str = "config/decision_rules.json"
    source_id: str = "neotree"
    facility_id: str = "local-facility"
    facility_name: str = "Local Facility"
    openhim_base_url: str = "http://localhost:5001"
    openhim_username: str = "neotree"
    openhim_password: str = "neotree"
    openhim_channel_path: str = "/fhir"
    openhim_client_id: str | None = None
    openhim_timeout_seconds: float = 30.0
    otel_enabled: bool = True
    otel_service_name: str = "fhir-cdc-adapter"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FA_", env_file=".env", extra="ignore")

    @property
    def registry_client_id(self) -> str:
        return self.openhim_client_id or self.facility_id or self.source_id


@lru_cache
def get_settings() -> Settings:
    return Settings()
