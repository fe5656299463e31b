"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables named after the fields below.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_timeout_seconds: float = 8.0
    stripe_max_network_retries: int = 1

    calcom_api_url: str = "https://api.cal.com/v2"
    calcom_client_id: str = ""
    calcom_secret_key: str = ""
    calcom_webhook_secret: str = ""
    calcom_timeout_seconds: float = 10.0
    calcom_api_version: str = "2024-08-13"

    dispute_period_hours: int = 72
    in_progress_window_minutes: int = 15
    token_refresh_lock_timeout_seconds: int = 30
    token_refresh_lock_wait_seconds: int = 10
    consumer_max_attempts: int = 3
    payout_max_retries: int = 3
    payout_sweep_interval_seconds: int = 300
    booking_attempt_timeout_seconds: int = 120
    stuck_saga_after_minutes: int = 15
    rate_limit_per_minute: int = 30
    admin_alert_email: str = "ops@mentorsaga.local"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
