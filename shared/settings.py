"""Application settings and environment configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass
class Settings:
    """Runtime configuration resolved from environment variables."""

    database_url: Optional[str] = None
    notifier_url: Optional[str] = None
    reminder_count: int = 10
    gateway_timeout_seconds: float = 5.0
    authorization_timeout_seconds: float = 60.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        env_database_url = os.getenv("PICO_DATABASE_URL")
        env_notifier_url = os.getenv("PICO_NOTIFIER_URL")
        env_count = os.getenv("PICO_REMINDER_COUNT")
        env_timeout = os.getenv("PICO_GATEWAY_TIMEOUT_SECONDS")
        env_auth_timeout = os.getenv("PICO_AUTHORIZATION_TIMEOUT_SECONDS")
        env_log_level = os.getenv("PICO_LOG_LEVEL")
        if env_database_url:
            self.database_url = env_database_url
        if env_notifier_url:
            self.notifier_url = env_notifier_url.rstrip("/")
        if env_count:
            self.reminder_count = int(env_count)
        if env_timeout:
            self.gateway_timeout_seconds = float(env_timeout)
        if env_auth_timeout:
            self.authorization_timeout_seconds = float(env_auth_timeout)
        if env_log_level:
            self.log_level = env_log_level.upper()
        if self.reminder_count < 1:
            raise ValueError("PICO_REMINDER_COUNT must be >= 1")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
