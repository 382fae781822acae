"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Pipeline backend configuration
    api_base_url: str = "http://localhost:8000/api/v1"
    api_key: Optional[str] = None
    request_timeout_seconds: float = 30.0
    max_concurrent_requests: int = 10

    # Cache settings
    cache_enabled: bool = True
    cache_db_path: Path = Path("./cache/console_cache.db")
    cache_schema_version: int = 1
    # Persisted entries older than ttl * multiplier are never hydrated
    cache_hard_expiry_multiplier: int = 5
    # Opt-in upper bound on staleness; None always prefers availability
    cache_max_stale_seconds: Optional[float] = None

    # Polling cadence (milliseconds)
    jobs_poll_fast_ms: int = 3000
    jobs_poll_idle_ms: int = 15000
    dashboard_refresh_ms: int = 30000
    logs_refresh_ms: int = 10000

    # List views and charts
    page_size: int = 20
    cost_trend_max_points: int = 30
    logs_limit: int = 100
    dashboard_logs_limit: int = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
