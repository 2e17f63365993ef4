"""Central environment-driven settings for the notification service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "notification"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    db_pool_size: int = 10
    db_max_overflow: int = 20
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    otel_sample_ratio: float = 1.0

    firebase_project_id: str = ""
    firebase_client_email: str = ""
    firebase_private_key: str = ""
    push_batch_size: int = 500

    reminder_offsets_hours: list[int] = [24, 1]
    reminder_window_seconds: int = 300
    reminder_sweep_interval_seconds: int = 900
    reminder_cleanup_interval_seconds: int = 86400
    reminder_retention_days: int = 7

    delivery_queue_size: int = 1000
    delivery_workers: int = 4
    delivery_drain_timeout_seconds: float = 10.0
    realtime_send_timeout_seconds: float = 5.0
    guest_registrations_per_minute: int = 10
    kafka_consumers_enabled: bool = True
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
