"""
Configuration settings for the clan sync client.

Uses environment variables (prefix ``CLANSYNC_``) with sensible defaults.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CACHE_TTLS: dict[str, int] = {
    "user": 3600,
    "stats": 300,
    "federations": 1800,
    "clans": 900,
    "missions": 600,
}


class SyncConfig(BaseSettings):
    """Settings for the sync coordinator and its collaborators."""

    model_config = SettingsConfigDict(
        env_prefix="CLANSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API
    api_base_url: str = "http://localhost:5000/api"
    api_token: str | None = None

    # Schedules (seconds)
    sync_interval: float = 300.0  # Periodic sync every 5 minutes
    health_check_interval: float = 120.0  # Health check every 2 minutes

    # Timeouts (seconds)
    sync_timeout: float = 30.0
    health_check_timeout: float = 10.0

    # Cache hygiene
    expired_cleanup_threshold: int = Field(default=10, ge=0)

    # Retry settings
    max_retries: int = Field(default=3, ge=1)
    base_retry_delay: float = Field(default=1.0, ge=0)
    max_retry_delay: float = Field(default=30.0, ge=0)

    # Cache storage
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".clansync")
    cache_db_name: str = "cache.db"
    cache_ttls: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CACHE_TTLS))
    default_cache_ttl: int = 600

    debug: bool = False

    @field_validator(
        "sync_interval",
        "health_check_interval",
        "sync_timeout",
        "health_check_timeout",
    )
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        """Reject zero or negative intervals and timeouts."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @property
    def cache_db_path(self) -> Path:
        """Full path to the cache database."""
        return Path(self.cache_dir) / self.cache_db_name


@lru_cache
def get_settings() -> SyncConfig:
    """Get cached settings instance."""
    return SyncConfig()
