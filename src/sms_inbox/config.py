from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


# Repo root in local dev, /app in Docker
PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseModel):
    # SQLite file in the project root unless DATABASE_URL says otherwise
    database_url: str = Field(
        default_factory=lambda: os.getenv(
            "DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'sms_inbox.db'}"
        )
    )

    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # --- Twilio (delivery + webhook signature secret) ---
    twilio_account_sid: str | None = Field(default_factory=lambda: os.getenv("TWILIO_ACCOUNT_SID"))
    twilio_auth_token: str | None = Field(default_factory=lambda: os.getenv("TWILIO_AUTH_TOKEN"))
    twilio_from_number: str | None = Field(default_factory=lambda: os.getenv("TWILIO_FROM_NUMBER"))
    twilio_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("TWILIO_TIMEOUT_SECONDS", 10.0)
    )

    # Externally visible base URL (scheme + host) the carrier signs against.
    # Needed behind TLS-terminating proxies, where request.url differs from it.
    public_base_url: str | None = Field(default_factory=lambda: os.getenv("PUBLIC_BASE_URL"))

    # --- Translation model ---
    translation_model: str = Field(
        default_factory=lambda: os.getenv("TRANSLATION_MODEL", "gpt-4o-mini")
    )
    translation_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("TRANSLATION_TIMEOUT_SECONDS", 15.0)
    )

    # --- Volunteer sessions ---
    session_secret: str | None = Field(default_factory=lambda: os.getenv("SESSION_SECRET"))
    presence_window_seconds: int = Field(
        default_factory=lambda: _env_int("PRESENCE_WINDOW_SECONDS", 120)
    )

    # --- Outbound retry policy ---
    delivery_max_attempts: int = Field(default_factory=lambda: _env_int("DELIVERY_MAX_ATTEMPTS", 3))
    delivery_backoff_seconds: float = Field(
        default_factory=lambda: _env_float("DELIVERY_BACKOFF_SECONDS", 1.0)
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
