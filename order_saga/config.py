from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Checkout tunables, read from ORDER_SAGA_* environment variables or .env."""

    hold_duration_seconds: int = Field(default=15 * 60, gt=0)
    reaper_interval_seconds: float = Field(default=60.0, gt=0)
    reaper_batch_size: int = Field(default=100, gt=0)
    low_stock_alert: bool = Field(default=True)
    idempotency_key_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    attempt_history: int = Field(default=1000, gt=0)
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_prefix="ORDER_SAGA_", env_file=".env", extra="ignore")

    @property
    def hold_duration(self) -> timedelta:
        return timedelta(seconds=self.hold_duration_seconds)

    @property
    def idempotency_key_ttl(self) -> timedelta:
        return timedelta(seconds=self.idempotency_key_ttl_seconds)


@lru_cache
def get_settings() -> Settings:
    return Settings()
