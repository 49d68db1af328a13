"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Runtime environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("ESCROW_ENV", "dev").lower()

# Legacy shared key, only honoured in dev
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "test"}

# Scheduler (optional, enable on exactly one replica)
SCHEDULER_ENABLED = os.getenv("ESCROW_SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}


class Settings(BaseSettings):
    """Environment configuration for the escrow backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///freelance_escrow.db"
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
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Scheduler -------------------------------------------------------
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    AUTO_RELEASE_INTERVAL_MINUTES: int = Field(default=5, ge=1)
    AUTO_RELEASE_GRACE_DAYS: int = Field(default=7, ge=0)
    OVERDUE_SWEEP_INTERVAL_MINUTES: int = Field(default=60, ge=1)
    OUTBOX_DISPATCH_INTERVAL_SECONDS: int = Field(default=30, ge=1)
    OUTBOX_BATCH_SIZE: int = Field(default=100, ge=1)

    # --- Escrow business rules -------------------------------------------
    RELEASE_ON_CLIENT_APPROVAL: bool = False
    # When set, a flat percentage replaces the budget-tiered service charge.
    SERVICE_CHARGE_PERCENT: Decimal | None = Field(default=None, ge=0, le=20)

    # --- Payment gateway -------------------------------------------------
    PAYMENT_GATEWAY: Literal["sandbox", "stripe"] = "sandbox"
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None

    # --- Notifications ---------------------------------------------------
    # Outbox events are POSTed here when set; otherwise they are only logged.
    NOTIFICATION_WEBHOOK_URL: str | None = None
    NOTIFICATION_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("STRIPE_WEBHOOK_SECRET", "STRIPE_SECRET_KEY")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class AppInfo(BaseModel):
    name: str = "freelance-escrow-backend"
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
    "SCHEDULER_ENABLED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
