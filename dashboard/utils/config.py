"""
Configuration management for Pool Watchman.

Uses pydantic-settings to load configuration from environment variables
and .env files.
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Backing store (PostgREST / Supabase)
    supabase_url: str = "http://localhost:54321"
    supabase_key: Optional[str] = None
    request_timeout_seconds: float = 10.0
    enabled_sources: str = "pipeline_a,pipeline_b,pipeline_c,knowledge"
    change_poll_seconds: float = 5.0

    # API Configuration
    api_port: int = 8000
    log_level: str = "INFO"
    api_title: str = "Pool Watchman API"
    api_version: str = "1.0.0"

    # Paging
    page_size: int = 50
    folder_scan_batch_size: int = 1000
    folder_scan_limit: int = 10000  # per source

    # Reload scheduling
    debounce_seconds: float = 2.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    cooldown_seconds: float = 30.0
    error_notice_interval_seconds: float = 10.0
    fallback_poll_seconds: float = 30.0

    # Health thresholds (minutes)
    health_sample_limit: int = 10
    stuck_processing_minutes: int = 10
    stuck_queue_minutes: int = 5
    missing_chunks_minutes: int = 5
    pending_validation_minutes: int = 15
    failed_minutes: int = 0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def get_enabled_sources(self) -> list[str]:
        """Parse enabled source ids into list."""
        return [
            s.strip()
            for s in self.enabled_sources.split(',')
            if s.strip()
        ]

    def get_rest_url(self) -> str:
        """Base URL of the PostgREST endpoint."""
        return self.supabase_url.rstrip('/') + "/rest/v1"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
