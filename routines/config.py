"""
Centralized configuration for the routine scheduling core.

Loads settings from .env (if present) and the process environment.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# .env at the project root (one level above routines/)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Scheduler tuning knobs loaded from environment variables."""

    # Materialization
    HORIZON_DAYS: int = Field(default=60, gt=0)
    MAX_MATERIALIZE_RETRIES: int = Field(default=3, gt=0)

    # Reminder scanning
    SCAN_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)
    DISPATCH_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    DISPATCH_CONCURRENCY: int = Field(default=8, gt=0)
    MAX_DISPATCH_RETRIES: int = Field(default=5, gt=0)

    # Optimistic concurrency on routine writes made by the service itself
    MAX_VERSION_RETRIES: int = Field(default=3, gt=0)

    ENABLE_SCHEDULER: bool = True
    LOG_LEVEL: str = "INFO"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return str(v).strip().upper()


def _load_settings() -> Settings:
    """Build Settings from the environment, keeping defaults for unset keys."""
    values = {
        name: os.environ[name]
        for name in Settings.model_fields
        if os.environ.get(name, "").strip()
    }
    return Settings(**values)


# Singleton, imported as:
#   from routines.config import settings
settings = _load_settings()
