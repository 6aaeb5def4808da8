from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "domain-watch"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    webhook_timeout_seconds: float = 30.0
    webhook_test_timeout_seconds: float = 15.0
    webhook_max_retries: int = 3
    webhook_retry_base_seconds: float = 1.0
    webhook_user_agent: str = "DomainWatch-Webhooks/1.0"
    webhook_error_body_limit: int = 200
    shutdown_grace_seconds: float = 30.0
    api_key_header: str = "X-API-Key"
    # sha256(api key) hex digest -> granted scopes
    api_keys: dict[str, list[str]] = {}
    otel_enabled: bool = True
    otel_service_name: str = "domain-watch"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="DW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
