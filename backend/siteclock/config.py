from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TIE_BREAK_POLICIES = ("first", "nearest")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")
    """Application runtime configuration."""

    app_name: str = "SiteClock"
    environment: str = os.getenv("SC_ENVIRONMENT", "development")
    host: str = os.getenv("SC_HOST", "127.0.0.1")
    port: int = int(os.getenv("SC_PORT", "8080"))
    log_level: str = os.getenv("SC_LOG_LEVEL", "INFO")

    sqlite_path: Path = Path(os.getenv("SC_SQLITE_PATH", "./data/siteclock.db"))
    timezone: str = os.getenv("TZ", "UTC")

    location_timeout_seconds: float = float(os.getenv("SC_LOCATION_TIMEOUT", "10"))
    location_history_size: int = int(os.getenv("SC_LOCATION_HISTORY", "100"))
    default_radius_m: float = float(os.getenv("SC_DEFAULT_RADIUS", "100"))
    geofence_tie_break: str = os.getenv("SC_GEOFENCE_TIE_BREAK", "first")

    event_queue_size: int = int(os.getenv("SC_EVENT_QUEUE_SIZE", "100"))
    activity_feed_size: int = int(os.getenv("SC_ACTIVITY_FEED_SIZE", "50"))
    seed_sample_locations: bool = os.getenv("SC_SEED_SAMPLE_LOCATIONS", "false").lower() == "true"

    cors_origins: list[str] = Field(
        default_factory=lambda: [
            origin.strip() for origin in os.getenv("SC_CORS_ORIGINS", "").split(",") if origin.strip()
        ]
    )

    @field_validator("geofence_tie_break")
    @classmethod
    def _check_tie_break(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in TIE_BREAK_POLICIES:
            raise ValueError(f"geofence_tie_break must be one of {', '.join(TIE_BREAK_POLICIES)}")
        return normalized

    @field_validator(
        "default_radius_m",
        "location_timeout_seconds",
        "location_history_size",
        "event_queue_size",
        "activity_feed_size",
    )
    @classmethod
    def _check_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, list):
            return value
        if not value:
            return []
        return [origin.strip() for origin in value.split(",") if origin.strip()]


settings = Settings()

# Ensure essential directories exist
settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
