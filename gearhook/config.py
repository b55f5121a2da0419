"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from datetime import datetime
from typing import Optional

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    workers_enabled: bool = True

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (force-replay confirmations, worker heartbeats)
    redis_url: str = "redis://localhost:6379/0"

    # Inbound webhook signing (Kapso bot)
    webhook_secret: str
    webhook_secret_previous: str = ""  # accepted until the expiry below
    webhook_secret_previous_expires_at: Optional[datetime] = None

    # Admin API
    admin_jwt_secret: str = ""
    admin_jwt_algorithm: str = "HS256"

    # SendGrid
    sendgrid_api_key: str = ""
    from_email: str = "noreply@gearhook.app"
    from_name: str = "Gear Desk"

    # Sentry
    sentry_dsn: str = ""

    # Ingestion
    ingest_store_retry_attempts: int = 3
    ingest_store_retry_backoff_seconds: float = 0.2
    error_message_max_length: int = 1000

    # Replay
    force_confirm_ttl_seconds: int = 300

    # Recovery workers
    sweeper_interval_seconds: int = 120
    pending_redispatch_after_seconds: int = 300
    processing_timeout_seconds: int = 900
    delayed_job_poll_seconds: int = 30
    delayed_job_running_timeout_seconds: int = 600

    # Purchases
    gear_received_notify_delay_minutes: int = 10
    quote_token_ttl_days: int = 14

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
