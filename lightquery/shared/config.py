"""
Shared configuration management for lightquery.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuerySettings(BaseSettings):
    """Process-level defaults for queries, read from LIGHTQUERY_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="LIGHTQUERY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Query defaults (milliseconds)
    stale_time: float = Field(default=0, ge=0)
    cache_time: float = Field(default=5 * 60_000, ge=0)
    retry: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=1000, ge=0)
    refetch_interval: float = Field(default=0, ge=0)
    suspense: bool = False

    # Advisory only; exceeding it logs a warning
    max_cache_size: Optional[int] = Field(default=None, ge=0)

    log_level: str = "info"


@lru_cache(maxsize=1)
def get_settings() -> QuerySettings:
    """Get the cached settings instance."""
    return QuerySettings()
