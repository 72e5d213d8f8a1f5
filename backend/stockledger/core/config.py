"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Services take a ``Settings``
instance in their constructor and fall back to ``get_settings()``.
"""

from functools import lru_cache
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a ``.env`` file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - relative path for local runs, override via DATABASE_URL
    database_url: str = "sqlite:///./data/stockledger.db"
    sql_echo: bool = False

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ==========================================================================
    # Stock mutation
    # ==========================================================================
    stock_mutation_max_retries: int = 5  # optimistic-concurrency attempts per mutation
    batch_pick_max_replans: int = 3  # FEFO re-plans when a pick plan goes stale

    # ==========================================================================
    # Expiry (FEFO warnings and expiring-batch report)
    # ==========================================================================
    expiry_warning_days: int = 90
    expiry_critical_days: int = 30
    expiry_medium_priority_days: int = 60

    @field_validator("stock_mutation_max_retries", "batch_pick_max_replans")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("retry budget must be between 1 and 10")
        return v

    @model_validator(mode="after")
    def validate_expiry_windows(self) -> "Settings":
        """Critical window must sit inside the warning window."""
        if self.expiry_critical_days < 0 or self.expiry_warning_days < 0:
            raise ValueError("expiry windows must not be negative")
        if self.expiry_critical_days > self.expiry_warning_days:
            raise ValueError(
                f"expiry_critical_days ({self.expiry_critical_days}) must not exceed "
                f"expiry_warning_days ({self.expiry_warning_days})"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
