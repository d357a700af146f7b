"""Engine configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Remote item store (REST backend)
    ITEM_STORE_URL: str = "http://localhost:8000/api"
    ITEM_STORE_API_KEY: str = ""
    ITEM_STORE_TIMEOUT_SECONDS: float = 10.0

    # Redis (durable session tier + push channel)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Pipeline directory cache
    TOPOLOGY_TTL_SECONDS: float = 5 * 60

    # Board cache tiers
    BOARD_CACHE_MEMORY_TTL_SECONDS: float = 5 * 60
    BOARD_CACHE_SESSION_TTL_SECONDS: float = 15 * 60
    BOARD_CACHE_SESSION_MAX_BYTES: int = 4 * 1024 * 1024

    # Realtime
    SELF_MOVE_WINDOW_MS: int = 2000
    REFRESH_DEBOUNCE_MS: int = 300
    REALTIME_RECONNECT_DELAY_MS: int = 1000
    REALTIME_RECONNECT_MAX_DELAY_MS: int = 30_000

    # Initial load
    LOAD_TIMEOUT_SECONDS: float = 30.0
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_DELAY_MS: int = 1500
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Background tasks (expiry sweep, archive sweep)
    BACKGROUND_RETRY_MAX_ATTEMPTS: int = 2
    BACKGROUND_RETRY_DELAY_MS: int = 2000
    BACKGROUND_TASK_TIMEOUT_SECONDS: float = 15.0
    EXPIRY_SWEEP_MIN_INTERVAL_SECONDS: float = 2 * 60

    # Board topology rules
    SCOPED_PIPELINE_SLUGS: list[str] = ["saloane", "horeca", "frizerii", "reparatii"]
    UNSCOPED_ROLES: list[str] = ["admin", "owner"]
    MIRRORED_PIPELINE_SLUGS: dict[str, list[str]] = {
        "receptie": ["saloane", "horeca", "frizerii", "reparatii"],
    }
    SALES_PIPELINE_SLUG: str = "vanzari"
    ARCHIVE_STAGE_MARKERS: list[str] = ["arhivat", "arhiva", "archive"]


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
