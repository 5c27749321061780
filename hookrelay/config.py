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
    app_port: int = 5000
    app_base_url: str = "http://localhost:5000"
    log_level: str = "INFO"
    allowed_origins: str = ""  # Comma-separated CORS origins (auto-includes localhost in dev)

    # Database
    database_url: str = "postgresql+asyncpg://localhost/hookrelay"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (worker heartbeats + readiness)
    redis_url: str = "redis://localhost:6379/0"

    # Management API auth - tokens are issued by the platform's auth service
    jwt_secret: str = ""

    # Ingestion
    webhook_base_url: str = "http://localhost:5000/webhook"
    webhook_path_prefix: str = "/webhook"

    # Forwarding
    tunnel_forward_host: str = "localhost"
    default_forward_timeout_ms: int = 30000

    # Notifications
    notification_timeout_seconds: float = 5.0

    # Background pool for forwarding + notifications after the ack
    background_max_concurrency: int = 50
    background_shutdown_timeout_seconds: float = 10.0

    # Retention sweeper
    retention_sweeper_enabled: bool = True
    retention_sweep_interval_seconds: int = 3600

    # Sentry
    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
