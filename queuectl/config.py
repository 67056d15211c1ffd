"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from QUEUECTL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QUEUECTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./queuectl.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    sqlite_busy_timeout_seconds: float = 30.0

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Worker Configuration
    worker_poll_interval_seconds: float = 0.5
    worker_heartbeat_interval_seconds: float = 5.0
    worker_store_backoff_seconds: float = 1.0

    # Reaper Configuration
    reaper_interval_seconds: float = 10.0

    # Job defaults (overridable at runtime through the config table)
    default_max_retries: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 300.0
    backoff_jitter_seconds: float = 1.0
    lease_timeout_seconds: float = 30.0
    job_timeout_seconds: float | None = None
    max_error_length: int = 2000

    # Observability
    otel_service_name: str = "queuectl"
    otel_exporter_otlp_endpoint: str | None = None
    log_level: str = "INFO"
    log_format: str = "console"  # json or console

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
