"""Configuration management for SatsHunt.

Centralises environment variable loading and validation logic while keeping the
public API intentionally simple.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional, TypedDict

_TRUTHY_VALUES = {"1", "true", "yes", "on"}


class AppConfig(TypedDict):
    """Typed representation of the application's configuration."""

    FLASK_SECRET_KEY: Optional[str]
    FLASK_ENV: str
    FLASK_DEBUG: bool
    BASE_URL: str
    MASTER_KEY: Optional[str]
    ADMIN_API_TOKEN: Optional[str]
    LN_BACKEND: str
    LND_REST_URL: str
    LND_MACAROON: Optional[str]
    LND_TLS_VERIFY: bool
    PAYER_TIMEOUT_SECONDS: int
    REFILL_TIME_TO_FULL_SECONDS: int
    REFILL_SLOWDOWN: float
    CHALLENGE_TTL_SECONDS: int
    DONATION_EXPIRY_SECONDS: int
    DONATION_POLL_INTERVAL_SECONDS: int
    MIN_DONATION_SATS: int
    MAX_DONATION_SATS: int
    WITHDRAW_SWEEP_INTERVAL_SECONDS: int
    WITHDRAW_SWEEP_MAX_ATTEMPTS: int
    CALLBACK_IN_FLIGHT_WAIT_SECONDS: float
    LN_ADDRESS_TIMEOUT_SECONDS: float
    BACKGROUND_WORKERS_ENABLED: bool
    RATE_LIMIT_ENABLED: bool
    RATE_LIMIT_DEFAULT: str
    LNURLW_RATE_LIMIT: str
    LOG_LEVEL: str
    DATABASE_URL: Optional[str]
    DB_HOST: str
    DB_PORT: int
    DB_USER: str
    DB_PASSWORD: Optional[str]
    DB_NAME: str
    REDIS_HOST: str
    REDIS_PORT: int
    REDIS_PASSWORD: Optional[str]
    REDIS_DB: int
    REDIS_URL: Optional[str]
    REDIS_ENABLED: bool
    APP_NAME: str
    APP_VERSION: str
    APP_HOST: str
    APP_PORT: int


def _get_env_bool(name: str, default: bool) -> bool:
    """Return an environment variable as a boolean."""

    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in _TRUTHY_VALUES


def _get_env_int(name: str, default: int) -> int:
    """Return an environment variable as an integer, raising on invalid input."""

    raw_value = os.getenv(name)
    if raw_value is None or raw_value == "":
        return default

    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer (got {raw_value!r})") from exc


def _get_env_float(name: str, default: float) -> float:
    """Return an environment variable as a float, raising on invalid input."""

    raw_value = os.getenv(name)
    if raw_value is None or raw_value == "":
        return default

    try:
        return float(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number (got {raw_value!r})") from exc


def get_config() -> AppConfig:
    """Load application configuration from environment variables."""

    return {
        # Flask Configuration
        "FLASK_SECRET_KEY": os.getenv("FLASK_SECRET_KEY"),
        "FLASK_ENV": os.getenv("FLASK_ENV", "development"),
        "FLASK_DEBUG": _get_env_bool("FLASK_DEBUG", False),
        # Public URL used for LNURL callbacks
        "BASE_URL": os.getenv("BASE_URL", "http://localhost:5000").rstrip("/"),
        # Card key derivation (32 hex chars, AES-128)
        "MASTER_KEY": os.getenv("MASTER_KEY"),
        "ADMIN_API_TOKEN": os.getenv("ADMIN_API_TOKEN"),
        # Lightning Configuration
        "LN_BACKEND": os.getenv("LN_BACKEND", "stub").lower(),
        "LND_REST_URL": os.getenv("LND_REST_URL", "https://127.0.0.1:8080"),
        "LND_MACAROON": os.getenv("LND_MACAROON"),
        "LND_TLS_VERIFY": _get_env_bool("LND_TLS_VERIFY", True),
        "PAYER_TIMEOUT_SECONDS": _get_env_int("PAYER_TIMEOUT_SECONDS", 30),
        # Refill throttling
        "REFILL_TIME_TO_FULL_SECONDS": _get_env_int("REFILL_TIME_TO_FULL_SECONDS", 21 * 24 * 3600),
        "REFILL_SLOWDOWN": _get_env_float("REFILL_SLOWDOWN", 0.0),
        # Withdraw protocol
        "CHALLENGE_TTL_SECONDS": _get_env_int("CHALLENGE_TTL_SECONDS", 300),
        "WITHDRAW_SWEEP_INTERVAL_SECONDS": _get_env_int("WITHDRAW_SWEEP_INTERVAL_SECONDS", 30),
        "WITHDRAW_SWEEP_MAX_ATTEMPTS": _get_env_int("WITHDRAW_SWEEP_MAX_ATTEMPTS", 120),
        "CALLBACK_IN_FLIGHT_WAIT_SECONDS": _get_env_float("CALLBACK_IN_FLIGHT_WAIT_SECONDS", 5.0),
        "LN_ADDRESS_TIMEOUT_SECONDS": _get_env_float("LN_ADDRESS_TIMEOUT_SECONDS", 10.0),
        # Donations
        "DONATION_EXPIRY_SECONDS": _get_env_int("DONATION_EXPIRY_SECONDS", 3600),
        "DONATION_POLL_INTERVAL_SECONDS": _get_env_int("DONATION_POLL_INTERVAL_SECONDS", 5),
        "MIN_DONATION_SATS": _get_env_int("MIN_DONATION_SATS", 1),
        "MAX_DONATION_SATS": _get_env_int("MAX_DONATION_SATS", 10_000_000),
        "BACKGROUND_WORKERS_ENABLED": _get_env_bool("BACKGROUND_WORKERS_ENABLED", True),
        # Rate Limiting
        "RATE_LIMIT_ENABLED": _get_env_bool("RATE_LIMIT_ENABLED", True),
        "RATE_LIMIT_DEFAULT": os.getenv("RATE_LIMIT_DEFAULT", "100/hour"),
        "LNURLW_RATE_LIMIT": os.getenv("LNURLW_RATE_LIMIT", "30/minute"),
        # Logging
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        # Database Configuration (REQUIRED for production)
        "DATABASE_URL": os.getenv("DATABASE_URL"),
        "DB_HOST": os.getenv("DB_HOST", "localhost"),
        "DB_PORT": _get_env_int("DB_PORT", 5432),
        "DB_USER": os.getenv("DB_USER", "satshunt"),
        "DB_PASSWORD": os.getenv("DB_PASSWORD"),
        "DB_NAME": os.getenv("DB_NAME", "satshunt"),
        # Redis Configuration (rate limiter storage)
        "REDIS_HOST": os.getenv("REDIS_HOST", "localhost"),
        "REDIS_PORT": _get_env_int("REDIS_PORT", 6379),
        "REDIS_PASSWORD": os.getenv("REDIS_PASSWORD"),
        "REDIS_DB": _get_env_int("REDIS_DB", 0),
        "REDIS_URL": os.getenv("REDIS_URL") or os.getenv("REDIS_DSN"),
        "REDIS_ENABLED": _get_env_bool("REDIS_ENABLED", True),
        # Application Settings
        "APP_NAME": os.getenv("APP_NAME", "SatsHunt"),
        "APP_VERSION": os.getenv("APP_VERSION", "0.1.0"),
        "APP_HOST": os.getenv("APP_HOST", "0.0.0.0"),
        "APP_PORT": _get_env_int("APP_PORT", 5000),
    }


def validate_config(config: Mapping[str, Any]) -> bool:
    """Validate critical configuration values.

    Args:
        config: Configuration mapping to validate.

    Returns:
        True if configuration is valid, raises ValueError otherwise.
    """

    if config.get("LN_BACKEND") not in ("stub", "lnd_rest"):
        raise ValueError(f"⚠️  Unsupported LN_BACKEND {config.get('LN_BACKEND')!r}")

    if config.get("REFILL_TIME_TO_FULL_SECONDS", 0) <= 0:
        raise ValueError("⚠️  REFILL_TIME_TO_FULL_SECONDS must be positive")

    if config.get("REFILL_SLOWDOWN", 0.0) < 0:
        raise ValueError("⚠️  REFILL_SLOWDOWN must not be negative")

    flask_env = config.get("FLASK_ENV")

    if flask_env == "production":
        if not config.get("FLASK_SECRET_KEY"):
            raise ValueError("⚠️  FLASK_SECRET_KEY must be set for production!")

        if not config.get("MASTER_KEY"):
            raise ValueError("⚠️  MASTER_KEY must be set for production!")

        if config.get("LN_BACKEND") == "stub":
            raise ValueError("⚠️  LN_BACKEND=stub cannot pay real invoices in production!")

        database_url = config.get("DATABASE_URL")
        db_password = config.get("DB_PASSWORD")

        if not database_url and not db_password:
            import warnings

            warnings.warn(
                "⚠️  DATABASE_URL or DB_PASSWORD not set - database connectivity may fail!",
                stacklevel=2,
            )

        if not config.get("ADMIN_API_TOKEN"):
            import warnings

            warnings.warn("⚠️  ADMIN_API_TOKEN not set - card provisioning is disabled!", stacklevel=2)

    return True
