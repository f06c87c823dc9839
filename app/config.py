"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Legacy shared key, only tolerated in dev
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "dev_local"}

API_SCOPES = {"client", "artisan", "admin"}

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}


class Settings(BaseSettings):
    """Environment configuration for the marketplace backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///craftmarket.db"
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    LOG_LEVEL: str = "INFO"

    # --- Fee policy ------------------------------------------------------
    DEFAULT_COMMISSION_PERCENT: int = Field(default=10, ge=0, le=100)
    TVA_PERCENT: int = Field(default=18, ge=0, le=100)
    VERIFIED_ADVANCE_PERCENT: int = Field(default=50, ge=0, le=100)
    URGENT_SURCHARGE_PERCENT: int = Field(default=20, ge=0)

    # --- Project lifecycle -----------------------------------------------
    PROJECT_QUOTE_WINDOW_DAYS: int = Field(default=6, ge=1)

    # --- Payment gateway (simulated stand-in) ----------------------------
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_GATEWAY_SUCCESS_RATE: float = Field(default=0.95, ge=0, le=1)
    PAYMENT_GATEWAY_MIN_LATENCY_SECONDS: float = 1.5
    PAYMENT_GATEWAY_MAX_LATENCY_SECONDS: float = 2.5

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("SENTRY_DSN")
    @classmethod
    def _strip_empty_dsn(cls, value: str | None) -> str | None:
        """Normalise empty DSNs to ``None`` so Sentry stays disabled."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class AppInfo(BaseModel):
    name: str = "craftmarket-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "API_SCOPES",
    "SCHEDULER_ENABLED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
