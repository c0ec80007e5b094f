"""
Centralized configuration with environment variable overrides.

Database, token and dispatch settings are read once at import time from
the environment (a local .env file is honoured) and validated before the
app starts serving.
"""

import logging
import os
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Bound per HTTP request by the middleware in main.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {env_var}: {raw!r}") from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid float for {env_var}: {raw!r}") from None


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass(frozen=True)
class DatabaseConfig:
    """MongoDB connection settings."""

    url: str = os.getenv("DATABASE_URL", "")
    name: str = os.getenv("DATABASE_NAME", "")
    timeout_ms: int = _safe_int("DB_TIMEOUT_MS", "10000")


@dataclass(frozen=True)
class AuthConfig:
    """Token signing settings."""

    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")
    access_token_expire_minutes: int = _safe_int("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7))


@dataclass(frozen=True)
class DispatchConfig:
    """Job offer and commission defaults."""

    offer_ttl_minutes: int = _safe_int("OFFER_TTL_MINUTES", "30")
    default_commission_rate: float = _safe_float("DEFAULT_COMMISSION_RATE", "30")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    cors_origins: List[str] = field(
        default_factory=lambda: _split_csv(
            os.getenv("CORS_ORIGINS", "http://localhost:3000,https://localhost:3000")
        )
    )
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    payment_webhook_secret: str = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
    public_url: str = os.getenv("PUBLIC_URL", "http://localhost:3000")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if config.database.timeout_ms < 1:
        raise ValueError(f"DB_TIMEOUT_MS must be >= 1, got {config.database.timeout_ms}")
    if config.auth.access_token_expire_minutes < 1:
        raise ValueError(
            "ACCESS_TOKEN_EXPIRE_MINUTES must be >= 1, "
            f"got {config.auth.access_token_expire_minutes}"
        )
    if config.dispatch.offer_ttl_minutes < 1:
        raise ValueError(
            f"OFFER_TTL_MINUTES must be >= 1, got {config.dispatch.offer_ttl_minutes}"
        )
    if not 0.0 <= config.dispatch.default_commission_rate <= 100.0:
        raise ValueError(
            "DEFAULT_COMMISSION_RATE must be between 0 and 100, "
            f"got {config.dispatch.default_commission_rate}"
        )
    if config.is_production and config.auth.jwt_secret == "dev-secret-change-me":
        raise ValueError("JWT_SECRET must be set in production")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
    logger.info("Configuration loaded for environment '%s'", config.environment)
    return config


# Singleton instance
settings = load_config()
