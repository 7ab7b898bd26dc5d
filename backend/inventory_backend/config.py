"""Application configuration management"""

import json
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

from inventory_backend.core.durations import parse_duration

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent

_DEV_SECRET_MARKERS = {
    "",
    "dev-access-secret-change-in-production",
    "dev-refresh-secret-change-in-production",
    "dev-email-secret-change-in-production",
    "dev-password-reset-secret-change-in-production",
    "change-me",
}


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Inventory Backend"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    API_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 1

    # Database
    DATABASE_URL: str = "sqlite:///./inventory.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    # Tokens: one secret and lifetime per token type
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_SECRET: str = "dev-access-secret-change-in-production"
    ACCESS_TOKEN_EXPIRES_IN: str = "15m"
    REFRESH_TOKEN_SECRET: str = "dev-refresh-secret-change-in-production"
    REFRESH_TOKEN_EXPIRES_IN: str = "7d"
    EMAIL_TOKEN_SECRET: str = "dev-email-secret-change-in-production"
    EMAIL_TOKEN_EXPIRES_IN: str = "15m"
    PASSWORD_RESET_TOKEN_SECRET: str = "dev-password-reset-secret-change-in-production"
    PASSWORD_RESET_TOKEN_EXPIRES_IN: str = "15m"

    # Password hashing
    BCRYPT_ROUNDS: int = 12

    # Login lockout / sessions
    MAX_LOGIN_ATTEMPTS: int = 5
    LOGIN_ATTEMPT_WINDOW: str = "15m"
    ACCOUNT_LOCKOUT_DURATION: str = "30m"
    MAX_CONCURRENT_SESSIONS: int = 5
    SESSION_INACTIVE_TIMEOUT: str = "24h"
    CLEANUP_INTERVAL: str = "1h"
    RUN_CLEANUP_SCHEDULER: bool = True

    # Security / audit logging
    ENABLE_SECURITY_LOGS: bool = True
    ENABLE_AUDIT_LOGS: bool = True
    SUSPICIOUS_ACTIVITY_THRESHOLD: int = 5
    SUSPICIOUS_ACTIVITY_WINDOW: str = "24h"
    LOG_RETENTION_DAYS: int = 30

    # Rate Limiting
    LOGIN_RATE_LIMIT_PER_MINUTE: int = 10
    LOGIN_RATE_LIMIT_PER_HOUR: int = 50
    PASSWORD_RESET_RATE_LIMIT_PER_HOUR: int = 3

    # Cookies
    ACCESS_COOKIE_NAME: str = "access_token"
    REFRESH_COOKIE_NAME: str = "refresh_token"

    # Mail
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    MAIL_FROM: str = ""
    MAIL_FROM_NAME: str = "Inventory"
    FRONTEND_URL: str = "http://localhost:5173"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:5173","http://example.com"]
            CORS_ORIGINS=http://localhost:5173,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @field_validator(
        "ACCESS_TOKEN_EXPIRES_IN",
        "REFRESH_TOKEN_EXPIRES_IN",
        "EMAIL_TOKEN_EXPIRES_IN",
        "PASSWORD_RESET_TOKEN_EXPIRES_IN",
        "LOGIN_ATTEMPT_WINDOW",
        "ACCOUNT_LOCKOUT_DURATION",
        "SESSION_INACTIVE_TIMEOUT",
        "CLEANUP_INTERVAL",
        "SUSPICIOUS_ACTIVITY_WINDOW",
    )
    @classmethod
    def _check_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def login_attempt_window(self) -> timedelta:
        return parse_duration(self.LOGIN_ATTEMPT_WINDOW)

    @property
    def account_lockout_duration(self) -> timedelta:
        return parse_duration(self.ACCOUNT_LOCKOUT_DURATION)

    @property
    def session_inactive_timeout(self) -> timedelta:
        return parse_duration(self.SESSION_INACTIVE_TIMEOUT)

    @property
    def cleanup_interval(self) -> timedelta:
        return parse_duration(self.CLEANUP_INTERVAL)

    @property
    def suspicious_activity_window(self) -> timedelta:
        return parse_duration(self.SUSPICIOUS_ACTIVITY_WINDOW)

    @property
    def log_retention(self) -> timedelta:
        return timedelta(days=self.LOG_RETENTION_DAYS)

    @property
    def refresh_cookie_path(self) -> str:
        return f"{self.API_PREFIX}/auth/refresh-token"

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if not self.is_production:
            return

        secrets = {
            "ACCESS_TOKEN_SECRET": self.ACCESS_TOKEN_SECRET,
            "REFRESH_TOKEN_SECRET": self.REFRESH_TOKEN_SECRET,
            "EMAIL_TOKEN_SECRET": self.EMAIL_TOKEN_SECRET,
            "PASSWORD_RESET_TOKEN_SECRET": self.PASSWORD_RESET_TOKEN_SECRET,
        }
        for name, value in secrets.items():
            if value in _DEV_SECRET_MARKERS or len(value) < 32:
                raise ValueError(
                    f"Insecure {name} for production. Use a strong key (e.g. `openssl rand -hex 32`)."
                )

        if len(set(secrets.values())) != len(secrets):
            raise ValueError("Each token type must use its own secret in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
