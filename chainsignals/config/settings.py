from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


class ConfigurationError(RuntimeError):
    """Raised when a setting the service cannot start without is missing."""


class AppSettings(BaseModel):
    app_name: str = "ChainSignals API"
    app_version: str = "0.1.0"
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    )
    sqlite_url: str = "sqlite:///./data/chainsignals.sqlite"

    chain_id: int = 0
    chain_name: str = "CustomChain"
    chain_rpc_url: str = ""
    chain_signals_address: str = ""
    chain_request_timeout_seconds: float = 20.0

    coingecko_api_key: str = ""
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    price_fetch_timeout_seconds: float = 20.0
    price_fetch_max_retries: int = 3
    price_tolerance_seconds: int = 600

    scheduler_enabled: bool = True
    signal_batch_size: int = 200
    signal_sync_interval_seconds: int = 10
    performance_attempt_interval_seconds: int = 60
    performance_safety_lag_seconds: int = 90

    sharpe_min_observations: int = 24
    sharpe_maturity_hours: float = 720.0
    max_equity_points: int = 100


def _default_cors_origins() -> list[str]:
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


def _parse_cors_env(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    vals = [item.strip() for item in raw.split(",")]
    vals = [item for item in vals if item]
    return vals or None


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env(name: str, legacy_name: str | None = None) -> str | None:
    val = os.getenv(name)
    if val is not None:
        return val
    if legacy_name:
        return os.getenv(legacy_name)
    return None


def _sqlite_url_from_path(path: str | None) -> str | None:
    if not path:
        return None
    return f"sqlite:///{path}"


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    base = Path(__file__).resolve().parents[2]
    settings_path = base / "config" / "settings.yaml"
    payload: dict[str, Any] = {}
    if settings_path.exists():
        payload = yaml.safe_load(settings_path.read_text(encoding="utf-8")) or {}
    if not isinstance(payload, dict):
        payload = {}
    app_cfg = payload.get("app", {}) or {}
    chain_cfg = payload.get("chain", {}) or {}
    prices_cfg = payload.get("prices", {}) or {}
    scheduler_cfg = payload.get("scheduler", {}) or {}
    stats_cfg = payload.get("stats", {}) or {}
    defaults = AppSettings()

    return AppSettings(
        app_name=_env("CHAINSIGNALS_APP_NAME") or app_cfg.get("name", defaults.app_name),
        app_version=_env("CHAINSIGNALS_APP_VERSION") or app_cfg.get("version", defaults.app_version),
        cors_origins=_parse_cors_env(_env("CHAINSIGNALS_CORS_ORIGINS"))
        or app_cfg.get("cors_origins", _default_cors_origins()),
        sqlite_url=(
            _env("CHAINSIGNALS_SQLITE_URL")
            or _sqlite_url_from_path(_env("DATABASE_PATH"))
            or payload.get("sqlite_url", defaults.sqlite_url)
        ),
        chain_id=int(_env("CHAINSIGNALS_CHAIN_ID", "CHAIN_ID") or chain_cfg.get("id", 0) or 0),
        chain_name=_env("CHAINSIGNALS_CHAIN_NAME", "CHAIN_NAME") or chain_cfg.get("name", defaults.chain_name),
        chain_rpc_url=_env("CHAINSIGNALS_RPC_URL", "CHAIN_RPC_URL") or chain_cfg.get("rpc_url", ""),
        chain_signals_address=(
            _env("CHAINSIGNALS_SIGNALS_ADDRESS", "CHAIN_SIGNALS_ADDRESS") or chain_cfg.get("signals_address", "")
        ),
        chain_request_timeout_seconds=float(
            _env("CHAINSIGNALS_CHAIN_TIMEOUT_SECONDS")
            or chain_cfg.get("request_timeout_seconds", defaults.chain_request_timeout_seconds)
        ),
        coingecko_api_key=_env("CHAINSIGNALS_COINGECKO_API_KEY", "COINGECKO_API_KEY") or prices_cfg.get("api_key", ""),
        coingecko_base_url=prices_cfg.get("base_url", defaults.coingecko_base_url),
        price_fetch_timeout_seconds=float(
            _env("CHAINSIGNALS_PRICE_TIMEOUT_SECONDS")
            or prices_cfg.get("timeout_seconds", defaults.price_fetch_timeout_seconds)
        ),
        price_fetch_max_retries=int(
            _env("CHAINSIGNALS_PRICE_MAX_RETRIES") or prices_cfg.get("max_retries", defaults.price_fetch_max_retries)
        ),
        price_tolerance_seconds=int(prices_cfg.get("tolerance_seconds", defaults.price_tolerance_seconds)),
        scheduler_enabled=_parse_bool(
            _env("CHAINSIGNALS_SCHEDULER_ENABLED"),
            bool(scheduler_cfg.get("enabled", defaults.scheduler_enabled)),
        ),
        signal_batch_size=int(scheduler_cfg.get("signal_batch_size", defaults.signal_batch_size)),
        signal_sync_interval_seconds=int(
            _env("CHAINSIGNALS_SIGNAL_SYNC_SECONDS")
            or scheduler_cfg.get("signal_sync_interval_seconds", defaults.signal_sync_interval_seconds)
        ),
        performance_attempt_interval_seconds=int(
            scheduler_cfg.get("performance_attempt_interval_seconds", defaults.performance_attempt_interval_seconds)
        ),
        performance_safety_lag_seconds=int(
            scheduler_cfg.get("performance_safety_lag_seconds", defaults.performance_safety_lag_seconds)
        ),
        sharpe_min_observations=int(stats_cfg.get("sharpe_min_observations", defaults.sharpe_min_observations)),
        sharpe_maturity_hours=float(stats_cfg.get("sharpe_maturity_hours", defaults.sharpe_maturity_hours)),
        max_equity_points=int(stats_cfg.get("max_equity_points", defaults.max_equity_points)),
    )


def require_chain_settings(settings: AppSettings) -> None:
    missing: list[str] = []
    if not settings.chain_id:
        missing.append("CHAIN_ID")
    if not settings.chain_rpc_url:
        missing.append("CHAIN_RPC_URL")
    if not settings.chain_signals_address:
        missing.append("CHAIN_SIGNALS_ADDRESS")
    if missing:
        raise ConfigurationError(
            "Missing chain configuration: " + ", ".join(missing) + ". Set them in the environment or .env"
        )
