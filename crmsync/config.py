"""Application configuration using Pydantic settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/crmsync"

    # Vtiger web services API
    vtiger_server_url: str = ""
    vtiger_username: str = ""
    vtiger_access_key: str = ""
    vtiger_request_timeout: float = 30.0
    vtiger_max_retries: int = 3

    # Sync engine sizing
    sync_type: str = "vtiger_contacts"
    concurrency_limit: int = 15
    flush_threshold: int = 100
    per_item_timeout: float = 30.0  # seconds per remote fetch
    max_retry_passes: int = 5
    retry_timeout_step: float = 15.0  # added to per_item_timeout on each retry pass
    retry_delay_step: float = 1.0  # pause between retry windows, multiplied by pass number
    failed_id_sample_size: int = 10

    # Id discovery
    discovery_timeout: float = 600.0
    discovery_retries: int = 3
    discovery_backoff_initial: float = 1.0
    discovery_backoff_max: float = 10.0
    discovery_progress_interval: float = 5.0

    # Watchdog
    watchdog_interval: float = 30.0
    stall_threshold: float = 300.0

    # Checkpoint store
    stale_run_minutes: int = 60
    finalize_max_attempts: int = 5
    finalize_backoff: float = 1.0

    # Scheduling
    daily_sync_enabled: bool = True
    daily_sync_hour: int = 0

    # API settings
    api_v1_prefix: str = "/api/v1"
    cors_origins: list[str] = ["*"]  # Restrict in production
    rate_limit_per_minute: int = 60

    # Environment
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
