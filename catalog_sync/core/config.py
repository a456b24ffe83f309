from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "catalog-sync-api"
    environment: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 5
    job_retry_max_minutes: int = 60
    default_job_priority: int = 100
    recovery_job_priority: int = 20
    stale_queued_minutes: int = 120
    stuck_running_minutes: int = 45
    recovery_limit: int = 200
    offer_refresh_default_hours: int = 20
    offer_freshness_window_hours: int = 24
    offer_freshness_slo_percent: float = 95.0
    otel_enabled: bool = True
    otel_service_name: str = "catalog-sync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
