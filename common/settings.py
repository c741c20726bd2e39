"""
Engine configuration loaded from the environment, a .env file, or JSON.

Usage:
    from common.settings import load_settings

    settings = load_settings()             # .env (if any) + process environment
    settings = EngineSettings.from_path("engine.json")
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from .market_metadata import normalize_market

logger = logging.getLogger(__name__)

ENV_PREFIX = "QUANTLAB_"

# setting name -> environment variable (without prefix)
_ENV_KEYS: dict[str, str] = {
    "allow_external_fallback_for_backtest": "BACKTEST_ALLOW_EXTERNAL_FALLBACK",
    "require_latest_data_for_screening": "SCREENING_REQUIRE_LATEST_DATA",
    "failure_threshold": "BREAKER_FAILURE_THRESHOLD",
    "cooldown_seconds": "BREAKER_COOLDOWN_SECONDS",
    "yahoo_base_url": "YAHOO_BASE_URL",
    "yahoo_timeout_seconds": "YAHOO_TIMEOUT_SECONDS",
    "yahoo_cache_ttl_minutes": "YAHOO_CACHE_TTL_MINUTES",
    "candle_data_root": "CANDLE_DATA_ROOT",
    "default_market": "DEFAULT_MARKET",
    "max_workers": "MAX_WORKERS",
    "holding_days": "HOLDING_DAYS",
}

_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n"}


def _parse_bool(key: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"{key} must be a boolean, got {raw!r}")


def _parse_int(key: str, raw: Any, minimum: int) -> int:
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


def _parse_float(key: str, raw: Any, minimum: float) -> float:
    try:
        value = float(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


@dataclass
class EngineSettings:
    """Resolver, breaker, feed and simulation knobs."""

    allow_external_fallback_for_backtest: bool = False
    require_latest_data_for_screening: bool = True
    failure_threshold: int = 3
    cooldown_seconds: float = 60.0
    yahoo_base_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    yahoo_timeout_seconds: float = 3.0
    yahoo_cache_ttl_minutes: int = 15
    candle_data_root: Optional[Path] = None
    default_market: str = "US"
    max_workers: int = 4
    holding_days: int = 3
    symbol_markets: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EngineSettings":
        if not isinstance(payload, Mapping):
            raise ValueError("Engine settings must be a mapping")
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload).difference(known))
        if unknown:
            raise ValueError(f"Unknown engine settings: {unknown}")

        settings = cls()
        for key, raw in payload.items():
            if raw is None or raw == "":
                continue
            setattr(settings, key, cls._coerce(key, raw))
        return settings

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        payload: dict[str, Any] = {}
        for key, suffix in _ENV_KEYS.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is not None and str(raw).strip():
                payload[key] = raw
        return cls.from_dict(payload)

    @classmethod
    def from_path(cls, path: str | Path) -> "EngineSettings":
        config_path = Path(path)
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        settings = cls.from_dict(payload)
        if settings.candle_data_root is not None and not settings.candle_data_root.is_absolute():
            settings.candle_data_root = (config_path.parent / settings.candle_data_root).resolve()
        return settings

    @staticmethod
    def _coerce(key: str, raw: Any) -> Any:
        if key in ("allow_external_fallback_for_backtest", "require_latest_data_for_screening"):
            return _parse_bool(key, raw)
        if key == "failure_threshold":
            return _parse_int(key, raw, minimum=1)
        if key in ("max_workers", "holding_days"):
            return _parse_int(key, raw, minimum=1)
        if key == "yahoo_cache_ttl_minutes":
            return _parse_int(key, raw, minimum=0)
        if key == "cooldown_seconds":
            return _parse_float(key, raw, minimum=0.0)
        if key == "yahoo_timeout_seconds":
            return _parse_float(key, raw, minimum=0.001)
        if key == "candle_data_root":
            return Path(str(raw))
        if key == "default_market":
            return normalize_market(str(raw))
        if key == "symbol_markets":
            if not isinstance(raw, Mapping):
                raise ValueError("symbol_markets must be a mapping of symbol -> market")
            return {str(symbol).strip().upper(): normalize_market(str(market)) for symbol, market in raw.items()}
        return str(raw).strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "allow_external_fallback_for_backtest": self.allow_external_fallback_for_backtest,
            "require_latest_data_for_screening": self.require_latest_data_for_screening,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "yahoo_base_url": self.yahoo_base_url,
            "yahoo_timeout_seconds": self.yahoo_timeout_seconds,
            "yahoo_cache_ttl_minutes": self.yahoo_cache_ttl_minutes,
            "candle_data_root": str(self.candle_data_root) if self.candle_data_root is not None else None,
            "default_market": self.default_market,
            "max_workers": self.max_workers,
            "holding_days": self.holding_days,
            "symbol_markets": dict(self.symbol_markets),
        }


def load_settings(env_file: Optional[str | Path] = None) -> EngineSettings:
    """Load a .env file (explicit path, or ./.env when present) and read settings from the environment."""
    env_path = Path(env_file) if env_file is not None else Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.debug("Loaded environment from %s", env_path)
    elif env_file is not None:
        raise FileNotFoundError(f"env file not found: {env_path}")
    return EngineSettings.from_env()
