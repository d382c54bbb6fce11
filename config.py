from __future__ import annotations

import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


class Config:
    """Runtime settings, read once from the environment (after load_dotenv)."""

    def __init__(self):
        self.APP_ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.APP_ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "1.0.0")

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./hiring.db")
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()
        self.APP_TIMEZONE = _env_str("APP_TIMEZONE", "UTC")

        origins = _env_str("ALLOWED_ORIGINS", "*")
        self.ALLOWED_ORIGINS = [o.strip() for o in origins.split(",") if o.strip()] or ["*"]

        self.UPLOAD_DIR = _env_str("UPLOAD_DIR", "./uploads")
        self.MAX_UPLOAD_MB = _env_int("MAX_UPLOAD_MB", 10)
        self.MAX_FILES_PER_UPLOAD = _env_int("MAX_FILES_PER_UPLOAD", 10)

        self.SESSION_TTL_MINUTES = _env_int("SESSION_TTL_MINUTES", 480)
        self.RATE_LIMIT_LOGIN = _env_int("RATE_LIMIT_LOGIN", 20)
        self.RATE_LIMIT_DEFAULT = _env_int("RATE_LIMIT_DEFAULT", 300)

        # Reject overlapping interviews for the same interviewer at write time.
        self.INTERVIEW_CONFLICT_CHECK = _env_bool("INTERVIEW_CONFLICT_CHECK", True)

        self.BOOTSTRAP_ADMIN_EMAIL = _env_str("BOOTSTRAP_ADMIN_EMAIL").lower()
        self.BOOTSTRAP_ADMIN_PASSWORD = str(os.getenv("BOOTSTRAP_ADMIN_PASSWORD", "") or "")

        self.HOST = _env_str("HOST", "127.0.0.1")
        self.PORT = _env_int("PORT", 5002)

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required")
        if self.LOG_LEVEL not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise RuntimeError(f"Invalid LOG_LEVEL: {self.LOG_LEVEL}")
        try:
            ZoneInfo(self.APP_TIMEZONE)
        except (ZoneInfoNotFoundError, ValueError):
            raise RuntimeError(f"Invalid APP_TIMEZONE: {self.APP_TIMEZONE}")
        if self.SESSION_TTL_MINUTES <= 0:
            raise RuntimeError("SESSION_TTL_MINUTES must be positive")
        if self.MAX_UPLOAD_MB <= 0:
            raise RuntimeError("MAX_UPLOAD_MB must be positive")
        if self.MAX_FILES_PER_UPLOAD <= 0:
            raise RuntimeError("MAX_FILES_PER_UPLOAD must be positive")
        if self.IS_PRODUCTION and "*" in self.ALLOWED_ORIGINS:
            raise RuntimeError("ALLOWED_ORIGINS must be explicit in production")
