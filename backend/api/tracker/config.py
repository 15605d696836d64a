"""Environment-based configuration for the Ops Tracker API."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# backend/api/tracker/config.py -> parents[1] == backend/api
API_DIR = Path(__file__).resolve().parents[1]

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

_env_loaded = False


def load_env_once() -> None:
    """
    Loads .env from:
      1) ENV_PATH if provided
      2) backend/api/.env (project default)
      3) current working directory .env (fallback)

    Real environment variables always win (override=False).
    """
    global _env_loaded
    if _env_loaded:
        return
    _env_loaded = True

    env_path = os.getenv("ENV_PATH")
    if env_path:
        p = Path(env_path)
        if p.exists():
            load_dotenv(p, override=False)
            return

    p2 = API_DIR / ".env"
    if p2.exists():
        load_dotenv(p2, override=False)
        return

    p3 = Path.cwd() / ".env"
    if p3.exists():
        load_dotenv(p3, override=False)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


class Settings:
    """Settings loaded from environment variables."""

    def __init__(self) -> None:
        load_env_once()

        self.app_env = os.getenv("APP_ENV", "development").strip().lower()
        self.log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = _int_env("PORT", 5000)

        origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
        self.cors_origins: list[str] = [o.strip() for o in origins.split(",") if o.strip()]

        # Audit pipeline
        self.audit_workers = max(1, _int_env("AUDIT_WORKERS", 2))
        self.audit_summary_days = max(1, _int_env("AUDIT_SUMMARY_DAYS", 30))
        self.history_limit = max(1, _int_env("HISTORY_LIMIT", 50))

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
