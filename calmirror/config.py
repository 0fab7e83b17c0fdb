"""Application configuration management."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calendar-mirror.db"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Google Calendar (authorized-user token JSON for the running principal)
    google_token_file: str = "/secrets/google-token.json"
    default_time_zone: str = "UTC"

    # Runtime features
    enable_scheduler: bool = True
    enable_webhooks: bool = True

    # Rate limiting
    rate_limit_enabled: bool = True
    webhook_rate_limit_per_minute: int = 120

    # Sync settings
    sync_interval_minutes: int = 60
    sync_lock_timeout_minutes: int = 30
    webhook_quiet_seconds: int = 120
    webhook_renewal_hours: int = 6
    webhook_channel_days: int = 6

    # Defaults used until the settings API stores a value
    default_days_ahead: int = 60
    default_clone_prefix: str = "* "

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
