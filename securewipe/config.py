"""
Runtime configuration, loaded from SECUREWIPE_* environment variables or .env.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Local state file; None keeps state in memory only
    state_path: Optional[str] = None

    # Cloud backend and notification endpoints
    backend_url: str = "http://127.0.0.1:8000"
    notify_url: Optional[str] = None
    remote_timeout_s: float = Field(default=10.0, gt=0)

    # Scheduling
    monitor_interval_s: float = Field(default=15 * 60, gt=0)
    command_poll_interval_s: float = Field(default=60, gt=0)

    event_journal_limit: int = Field(default=200, ge=1)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="SECUREWIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
