"""Shared market metadata, symbol normalization and fixed-point helpers."""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# Suffix the external feed expects per home market.
MARKET_SUFFIXES: dict[str, str] = {
    "INDIA": ".NS",
    "US": "",
}

# User-facing aliases for market names.
MARKET_ALIASES: dict[str, str] = {
    "IN": "INDIA",
    "NSE": "INDIA",
    "IND": "INDIA",
    "USA": "US",
    "NYSE": "US",
    "NASDAQ": "US",
}

SUPPORTED_MARKETS = set(MARKET_SUFFIXES)

RATIO_PLACES = Decimal("0.0001")
PRICE_PLACES = Decimal("0.01")

_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9&._\-^]*$")


def normalize_symbol(raw: str) -> str:
    """
    Normalize user input to the canonical internal symbol.

    Examples:
    - reliance -> RELIANCE
    - " aapl " -> AAPL
    - RELIANCE.NS -> RELIANCE (feed suffixes are stripped)
    """
    if raw is None or not str(raw).strip():
        raise ValueError("Symbol is required.")

    normalized = str(raw).strip().upper().replace(" ", "")
    for suffix in MARKET_SUFFIXES.values():
        if suffix and normalized.endswith(suffix):
            normalized = normalized[: -len(suffix)]

    if not _SYMBOL_RE.match(normalized):
        raise ValueError(f"Invalid symbol format: {raw}")
    return normalized


def normalize_market(raw: str | None, default: str = "US") -> str:
    """Normalize market aliases to INDIA/US."""
    if raw is None or not str(raw).strip():
        return default
    key = str(raw).strip().upper()
    key = MARKET_ALIASES.get(key, key)
    if key not in SUPPORTED_MARKETS:
        raise ValueError(f"Unsupported market: {raw}. Supported: {sorted(SUPPORTED_MARKETS)}")
    return key


def to_external_symbol(symbol: str, market: str | None = None) -> str:
    """Map an internal symbol to the external feed's ticker (RELIANCE/INDIA -> RELIANCE.NS)."""
    base = normalize_symbol(symbol)
    suffix = MARKET_SUFFIXES[normalize_market(market)]
    return f"{base}{suffix}"


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """Coerce numeric input to Decimal without passing through binary float repr."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"{field} must be numeric, got bool")
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError(f"{field} is required")
        try:
            result = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"{field} contains invalid numbers") from exc
    if not result.is_finite():
        raise ValueError(f"{field} must be finite")
    return result


def to_optional_decimal(value: Any, field: str = "value") -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in ("", "none", "nan", "null"):
        return None
    return to_decimal(value, field)


def quantize_ratio(value: Decimal) -> Decimal:
    """Round a fraction to four places, half-up."""
    return value.quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)


def round_price(value: Decimal) -> Decimal:
    return value.quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)


def parse_trade_date(value: Any, field: str = "date") -> date:
    """Parse YYYY-MM-DD (or a datetime/date) into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        raise ValueError(f"{field} is required")
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValueError(f"{field} contains invalid dates: {text}") from exc
