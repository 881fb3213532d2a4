"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    allowed_origins: str = ""  # Comma-separated CORS origins (auto-includes localhost in dev)

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (queue wake-ups + worker heartbeats)
    redis_url: str = "redis://localhost:6379/0"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""  # Platform account endpoint
    stripe_connect_webhook_secret: str = ""  # Connect (connected accounts) endpoint

    # Job queue
    webhook_max_retries: int = 5
    webhook_worker_concurrency: int = 5
    job_poll_interval_seconds: int = 5
    job_lock_timeout_seconds: int = 300
    job_max_backoff_seconds: int = 3600
    event_handler_max_attempts: int = 3

    # Outbox
    outbox_batch_size: int = 10
    outbox_poll_interval_seconds: int = 60
    outbox_max_retries: int = 5

    # Webhook recovery sweep (re-enqueue stored but unprocessed webhooks)
    webhook_recovery_interval_seconds: int = 300
    webhook_recovery_min_age_seconds: int = 600
    webhook_recovery_batch_size: int = 50

    # Run consumers inside the API process (single-container deploys)
    run_workers_in_process: bool = False

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
