from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    cron_secret: str | None = None
    tick_interval_seconds: float = 60.0
    request_timeout_seconds: float = 65.0
    max_backoff_seconds: float = 300.0
    drain_queue: bool = False
    max_ticks_per_cycle: int = 5
    otel_enabled: bool = True
    otel_service_name: str = "supplier-portal-cron"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SP_CRON_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
