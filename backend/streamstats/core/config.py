"""
Core configuration for the engagement analytics service.
Uses Pydantic Settings for environment variable management.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pydantic import model_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_empty_env_values(cls, data):
        if not isinstance(data, dict):
            return data
        # Platforms sometimes inject empty-string env vars; treat them as unset
        # so typed fields (bool/int/float) don't crash on startup. REDIS_URL is
        # the exception: an explicit empty value turns Redis off.
        return {key: value for key, value in data.items() if value != "" or key == "REDIS_URL"}

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "info"

    # Database
    DATABASE_URL: str = "postgresql://localhost:5432/streamstats"

    # Redis (dedup locks + live fan-out). Empty disables Redis entirely.
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_KEY_PREFIX: str = ""

    # Ingestion
    DEDUP_WINDOW_MINUTES: int = 30
    DEDUP_LOCK_TIMEOUT_SECONDS: float = 5.0
    DEDUP_LOCK_WAIT_SECONDS: float = 2.0
    MAX_ATTRIBUTE_LENGTH: int = 255
    MAX_METADATA_LENGTH: int = 4000

    # Aggregate maintenance
    # Inline refresh runs in the caller's thread (tests / single-process dev).
    AGGREGATE_REFRESH_INLINE: bool = False
    AGGREGATE_REFRESH_WORKERS: int = 4
    ROLLUP_SWEEP_ENABLED: bool = True
    ROLLUP_SWEEP_INTERVAL_SECONDS: int = 300

    # Query engine bounds
    FALLBACK_MAX_ROWS: int = 250_000
    FALLBACK_MAX_RANGE_DAYS: int = 366
    TOP_N_DEFAULT: int = 5
    TOP_N_MAX: int = 50

    # Live notifications
    LIVE_PUBLISH_ENABLED: bool = True
    LIVE_REDIS_CHANNEL_PREFIX: str = "live"

    # CORS
    FRONTEND_URL: str = "http://localhost:3000"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
