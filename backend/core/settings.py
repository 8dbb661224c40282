"""Runtime settings sourced from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass, field


DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(slots=True)
class Settings:
    google_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_max_retries: int = 3
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    intervention_ttl_seconds: float = 1800.0
    publish_connect_delay: float = 0.5
    publish_append_delay: float = 0.5
    log_level: str = "INFO"


def load_settings() -> Settings:
    origins_env = os.getenv("API_CORS_ORIGINS", "")
    origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]

    return Settings(
        google_api_key=os.getenv("GOOGLE_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL") or "gemini-2.5-flash",
        gemini_max_retries=max(1, _env_int("GEMINI_MAX_RETRIES", 3)),
        cors_origins=origins or list(DEFAULT_CORS_ORIGINS),
        intervention_ttl_seconds=_env_float("INTERVENTION_TTL_SECONDS", 1800.0),
        publish_connect_delay=_env_float("PUBLISH_CONNECT_DELAY", 0.5),
        publish_append_delay=_env_float("PUBLISH_APPEND_DELAY", 0.5),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""

    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment (tests)."""

    global _settings
    _settings = None
