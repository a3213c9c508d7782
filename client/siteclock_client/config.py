"""Konfigurations-Utilities für den SiteClock-Client."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_API_BASE_URL = "http://127.0.0.1:8080"
DEFAULT_TIMEOUT = 15
DEFAULT_REFRESH_TIMEOUT = 10.0


@dataclass(slots=True)
class AppConfig:
    """Konfigurationswerte für den Client."""

    api_base_url: str = DEFAULT_API_BASE_URL
    user_id: Optional[str] = None
    request_timeout_seconds: int = DEFAULT_TIMEOUT
    refresh_timeout_seconds: float = DEFAULT_REFRESH_TIMEOUT


def load_config(env_path: Optional[Path] = None) -> AppConfig:
    """Lädt die Konfiguration aus einer optionalen `.env` Datei."""

    env_path = env_path or Path(__file__).resolve().parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return AppConfig(
        api_base_url=os.getenv("SITECLOCK_API_BASE_URL", DEFAULT_API_BASE_URL),
        user_id=os.getenv("SITECLOCK_USER_ID"),
        request_timeout_seconds=int(os.getenv("SITECLOCK_TIMEOUT", DEFAULT_TIMEOUT)),
        refresh_timeout_seconds=float(os.getenv("SITECLOCK_REFRESH_TIMEOUT", DEFAULT_REFRESH_TIMEOUT)),
    )


__all__ = ["AppConfig", "load_config"]
