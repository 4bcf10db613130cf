"""Application configuration objects."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings used to configure the application."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = Field(
        default="Stock Planner",
        description="Human friendly name for the API.",
    )
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./stock_planner.db",
        description="SQLAlchemy compatible database URL of the backing store.",
    )
    echo_sql: bool = Field(
        default=False,
        description="Enable SQL echo logging for debugging.",
    )
    account_id: str = Field(
        default="local",
        description="Account whose rows this session reads and writes.",
    )
    default_target_qty: int = Field(
        default=5,
        ge=0,
        description="Stock level each store is replenished up to.",
    )
    low_stock_threshold: int = Field(
        default=2,
        ge=0,
        description="Stock strictly below this level triggers replenishment.",
    )
    quantity_debounce_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Quiet period before an on-hand quantity edit is persisted.",
    )
    transient_retry_delay_seconds: float = Field(
        default=0.35,
        ge=0,
        description="Delay before the single retry of a transient network failure.",
    )
    refresh_after_failure: bool = Field(
        default=True,
        description="Reload the full snapshot after a rolled-back mutation.",
    )
    post_mutation_refresh_seconds: float | None = Field(
        default=2.0,
        description="Trailing refresh delay after enablement toggles; None disables it.",
    )
    log_level: str = Field(
        default="INFO",
        description="Root logging level used by the ASGI entrypoint.",
    )

    @field_validator("database_url")
    @classmethod
    def _validate_sqlite_path(cls, value: str) -> str:
        if value.startswith("sqlite") and ":memory:" not in value and "///" not in value:
            raise ValueError(
                "SQLite database URLs should be in the form sqlite+aiosqlite:///path/to/db"
            )
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


__all__ = ["Settings", "get_settings"]
