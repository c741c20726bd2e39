"""Shared utilities for the market-data and simulation packages."""

from .errors import ComputationError, ExitRuleTableError, ExternalSourceError
from .logging_setup import log_context, setup_logging, teardown_logging
from .market_metadata import (
    MARKET_SUFFIXES,
    normalize_market,
    normalize_symbol,
    parse_trade_date,
    quantize_ratio,
    to_decimal,
    to_external_symbol,
    to_optional_decimal,
)
from .settings import EngineSettings, load_settings

__all__ = [
    "ComputationError",
    "ExitRuleTableError",
    "ExternalSourceError",
    "setup_logging",
    "teardown_logging",
    "log_context",
    "MARKET_SUFFIXES",
    "normalize_market",
    "normalize_symbol",
    "parse_trade_date",
    "quantize_ratio",
    "to_decimal",
    "to_external_symbol",
    "to_optional_decimal",
    "EngineSettings",
    "load_settings",
]
