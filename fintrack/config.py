from __future__ import annotations

import os
from dataclasses import dataclass

from fintrack.currency_conversion import SUPPORTED_CURRENCIES

LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _env_currency(name: str, default: str) -> str:
    raw = os.getenv(name, default)
    normalized = raw.strip().upper()
    if normalized not in SUPPORTED_CURRENCIES:
        return default
    return normalized


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_log_level(name: str, default: str) -> str:
    normalized = os.getenv(name, default).strip().upper()
    if normalized not in LOG_LEVELS:
        return default
    return normalized


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./fintrack.db"
    default_currency: str = "USD"
    frontend_origin: str = "http://localhost:3000"
    fx_api_url: str = "https://api.exchangerate-api.com/v4"
    fx_timeout_seconds: float = 5.0
    fx_cache_ttl_seconds: int = 12 * 60 * 60
    live_rates_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            default_currency=_env_currency("DEFAULT_CURRENCY", cls.default_currency),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            fx_api_url=os.getenv("FX_API_URL", cls.fx_api_url),
            fx_timeout_seconds=_env_float("FX_TIMEOUT_SECONDS", cls.fx_timeout_seconds),
            fx_cache_ttl_seconds=int(
                _env_float("FX_CACHE_TTL_SECONDS", cls.fx_cache_ttl_seconds)
            ),
            live_rates_enabled=_env_bool("LIVE_RATES_ENABLED", cls.live_rates_enabled),
            log_level=_env_log_level("LOG_LEVEL", cls.log_level),
        )
