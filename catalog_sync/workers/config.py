from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    api_base_url: str = "http://localhost:8000"
    worker_id: str = "local-worker"
    user_agent: str = "catalog-sync-offer-refresh/1.0"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    schedule_interval_seconds: float = 60.0
    recovery_interval_seconds: float = 300.0
    otel_enabled: bool = True
    otel_service_name: str = "catalog-sync-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
