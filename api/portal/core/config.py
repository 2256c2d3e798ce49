from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "supplier-portal-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    supabase_service_role_key: str | None = None
    auth_timeout_seconds: float = 5.0
    storage_bucket: str = "ppt"
    storage_timeout_seconds: float = 30.0
    cron_secret: str | None = None
    import_account_email_pattern: str = r"^directory-import-\d+@example\.com$"
    gamma_api_key: str | None = None
    gamma_base_url: str = "https://public-api.gamma.app/v1.0"
    gamma_base_urls: str | None = None
    gamma_text_mode: str = "preserve"
    gamma_export_as: str = "pptx"
    gamma_theme_id: str | None = None
    gamma_folder_ids: str | None = None
    gamma_proxy_url: str | None = None
    gamma_use_env_proxy: bool = False
    gamma_connect_timeout_seconds: float = 10.0
    gamma_create_timeout_seconds: float = 25.0
    gamma_status_timeout_seconds: float = 30.0
    gamma_download_timeout_seconds: float = 35.0
    gamma_cover_ai_background: bool = True
    gamma_pending_retry_after_seconds: int = 180
    gamma_pending_max_retry: int = 1
    gamma_max_poll_failures: int = 3
    gamma_max_transient_poll_failures: int = 10
    ppt_running_no_generation_timeout_seconds: int = 120
    worker_hard_timeout_seconds: float = 55.0
    ppt_dev_kick_worker: bool = False
    otel_enabled: bool = True
    otel_service_name: str = "supplier-portal-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
