from __future__ import annotations

import logging
import os
from pathlib import Path

from sqlalchemy.engine import make_url


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "on", "yes"}


class Settings:
    def __init__(self) -> None:
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./data/app.db")
        self.api_prefix = os.getenv("API_PREFIX", "/api/checksheet").rstrip("/")
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = _env_int("PORT", 8000)
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.migration_row_limit = _env_int("MIGRATION_ROW_LIMIT", 1000)
        self.version_retry_attempts = max(1, _env_int("VERSION_RETRY_ATTEMPTS", 3))
        self.report_artifacts = _env_flag("REPORT_ARTIFACTS")
        self.auth_mode = os.getenv("AUTH_MODE", "none").lower()
        self.cors_origins = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
            if origin.strip()
        ]

    @property
    def is_sqlite(self) -> bool:
        return make_url(self.database_url).get_backend_name() == "sqlite"


def ensure_dirs(settings: Settings) -> None:
    if not settings.is_sqlite:
        return
    database = make_url(settings.database_url).database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
