from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "job-sniper"
    environment: str = "dev"
    log_level: str = "INFO"

    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    portal_base_url: str = "https://www.amazon.jobs"
    portal_login_path: str = "/login"
    portal_account_path: str = "/account"
    portal_refresh_path: str = "/api/auth/refresh"
    account_email: str | None = None
    account_pin: str | None = None

    catalog_endpoint: str = "https://www.amazon.jobs/graphql"
    catalog_query_path: str | None = None
    catalog_timeout_seconds: float = 30.0
    search_location: str = "United Kingdom"
    search_keywords: str = "Warehouse Operative"
    search_radius_miles: int = 25
    page_size: int = 100
    page_delay_seconds: float = 0.5
    seen_retention_days: int = 30

    poll_cron_schedule: str = "*/5 * * * *"
    run_initial_cycle: bool = True

    claim_concurrency: int = 3
    claim_batch_size: int = 5
    claim_lock_ttl_seconds: int = 3600
    claim_max_attempts: int = 3
    claim_backoff_seconds: float = 5.0
    notification_enabled: bool = True
    notification_concurrency: int = 2
    notification_max_attempts: int = 3
    notification_backoff_seconds: float = 2.0
    notification_webhook_url: str | None = None
    queue_lease_seconds: int = 600
    finished_task_retention_seconds: int = 86400
    queue_poll_interval_seconds: float = 1.0
    queue_retry_max_seconds: float = 600.0
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100

    session_file_path: str = "./data/session.json"
    identity_pool_path: str = "./config/identity_pool.json"
    browser_headless: bool = True
    proxy_url: str | None = None
    challenge_timeout_seconds: float = 180.0
    one_time_code_window_seconds: int = 300

    key_provider: str = "local"
    aws_region: str = "us-east-1"
    kms_key_id: str | None = None
    local_master_key: str | None = None
    secret_cache_ttl_seconds: float = 3600.0
    secret_cache_sweep_seconds: float = 300.0

    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 60.0
    breaker_timeout_seconds: float = 30.0
    breaker_volume_threshold: int = 10

    admin_api_key: str | None = None
    http_host: str = "0.0.0.0"
    http_port: int = 3000

    otel_enabled: bool = True
    otel_service_name: str = "job-sniper"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SNIPER_", extra="ignore")

    @property
    def seen_retention_seconds(self) -> int:
        return self.seen_retention_days * 24 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()
