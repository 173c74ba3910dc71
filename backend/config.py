"""Environment-driven settings for the subscription tracker."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

DEFAULT_RATES_CACHE_PATH = Path(__file__).resolve().parent / "exchange_rates.cache.json"


def _get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is not None:
        value = value.strip()
        if value == "":
            return default
        return value
    return default


def _get_int(key: str, default: int) -> int:
    value = _get_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {key} must be an integer") from exc


def _get_float(key: str, default: float) -> float:
    value = _get_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {key} must be a number") from exc


def _get_int_at_least(key: str, default: int, minimum: int) -> int:
    value = _get_int(key, default)
    if value < minimum:
        raise ValueError(f"Environment variable {key} must be at least {minimum}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str
    frontend_origin: str
    username: str
    password: Optional[str]
    password_hash: Optional[str]
    jwt_secret: str
    token_ttl: timedelta
    rates_base_url: str
    rates_cache_path: Path
    rates_cache_ttl: timedelta
    rates_http_timeout: float
    log_level: str
    log_format: str


def load_settings() -> Settings:
    password = _get_env("APP_PASSWORD")
    # Tokens are signed with the login password when no dedicated secret is set.
    jwt_secret = _get_env("JWT_SECRET") or password
    if not jwt_secret:
        raise ValueError("JWT_SECRET or APP_PASSWORD must be set")
    timeout = _get_float("RATES_HTTP_TIMEOUT", 8.0)
    if timeout <= 0:
        raise ValueError("Environment variable RATES_HTTP_TIMEOUT must be positive")
    log_format = _get_env("LOG_FORMAT", "json").lower()
    if log_format not in {"json", "console"}:
        raise ValueError("Environment variable LOG_FORMAT must be json or console")

    return Settings(
        database_url=_get_env("DATABASE_URL", "sqlite:///./subscriptions.db"),
        frontend_origin=_get_env("FRONTEND_ORIGIN", "http://localhost:3000"),
        username=_get_env("APP_USERNAME", ""),
        password=password,
        password_hash=_get_env("APP_PASSWORD_HASH"),
        jwt_secret=jwt_secret,
        token_ttl=timedelta(days=_get_int_at_least("TOKEN_TTL_DAYS", 7, 1)),
        rates_base_url=_get_env("RATES_BASE_URL", "https://api.exchangerate.host"),
        rates_cache_path=Path(
            _get_env("RATES_CACHE_PATH", str(DEFAULT_RATES_CACHE_PATH))
        ),
        rates_cache_ttl=timedelta(
            seconds=_get_int_at_least("RATES_CACHE_TTL_SECONDS", 24 * 60 * 60, 60)
        ),
        rates_http_timeout=timeout,
        log_level=_get_env("LOG_LEVEL", "INFO").upper(),
        log_format=log_format,
    )
