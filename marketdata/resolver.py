"""Resolve daily candles from the canonical store, filling gaps from the external feed."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable

from common.logging_setup import log_context
from common.market_metadata import normalize_symbol
from common.settings import EngineSettings

from .circuit_breaker import FailureTracker
from .models import Candle, last_trade_date
from .sources import CandleSource

logger = logging.getLogger(__name__)

MODE_DEFAULT = "default"
MODE_SCREENING = "screening"
MODE_BACKTEST = "backtest"
RESOLVE_MODES = (MODE_DEFAULT, MODE_SCREENING, MODE_BACKTEST)

CURRENT_PRICE_LOOKBACK_DAYS = 7


def _symbol_key(symbol: Any) -> str | None:
    try:
        return normalize_symbol(symbol)
    except ValueError as exc:
        logger.warning("Cannot resolve candles for symbol %r: %s", symbol, exc)
        return None


def merge_candles(
    primary: Iterable[Candle],
    secondary: Iterable[Candle],
    start: date | None = None,
    end: date | None = None,
) -> list[Candle]:
    """
    Merge two candle lists into one ascending list keyed by trade date.

    Every primary candle is kept. A secondary candle is only used for a date the
    primary list does not have, and only when it falls inside [start, end]
    (either bound may be omitted).
    """
    merged: dict[date, Candle] = {}
    for candle in primary:
        merged.setdefault(candle.trade_date, candle)
    for candle in secondary:
        if start is not None and candle.trade_date < start:
            continue
        if end is not None and candle.trade_date > end:
            continue
        merged.setdefault(candle.trade_date, candle)
    return [merged[day] for day in sorted(merged)]


@dataclass(frozen=True)
class ScreeningCandles:
    candles: list[Candle]
    stale: bool
    latest_date: date | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows": len(self.candles),
            "stale": self.stale,
            "latest_date": self.latest_date.isoformat() if self.latest_date else None,
        }


class MarketDataResolver:
    """
    Canonical-first candle resolution with a guarded external fallback.

    The canonical source always wins. The external source is only asked for the
    dates after the canonical source's last candle, and only while the failure
    tracker reports the symbol's circuit as closed. Nothing raised by either
    source escapes; missing data comes back as an empty or partial list.
    """

    def __init__(
        self,
        canonical: CandleSource,
        external: CandleSource | None = None,
        tracker: FailureTracker | None = None,
        settings: EngineSettings | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.canonical = canonical
        self.external = external
        self.tracker = tracker or FailureTracker(
            failure_threshold=self.settings.failure_threshold,
            cooldown_seconds=self.settings.cooldown_seconds,
        )

    def _fetch_canonical(self, symbol: str, start: date, end: date) -> list[Candle]:
        try:
            return list(self.canonical.get_daily_candles(symbol, start, end))
        except Exception as exc:
            logger.error("Canonical source failed for %s (%s..%s): %s", symbol, start, end, exc)
            return []

    def _fetch_external(self, symbol: str, start: date, end: date) -> list[Candle]:
        if self.external is None:
            return []
        if self.tracker.is_open(symbol):
            logger.warning("Circuit breaker open for %s, skipping external request", symbol)
            return []

        try:
            candles = list(self.external.get_daily_candles(symbol, start, end))
        except Exception as exc:
            self.tracker.record_failure(symbol)
            logger.warning("External fetch failed for %s: %s", symbol, exc)
            return []

        if candles:
            self.tracker.record_success(symbol)
        else:
            self.tracker.record_failure(symbol)
        return candles

    def resolve_candles(self, symbol: str, start: date, end: date) -> list[Candle]:
        """Return ascending candles for [start, end], merging in external data for any trailing gap."""
        key = _symbol_key(symbol)
        if key is None:
            return []
        if start > end:
            logger.warning("Empty range for %s: start %s is after end %s", key, start, end)
            return []

        with log_context(data_source="COMPOSITE", symbol=key):
            canonical = self._fetch_canonical(key, start, end)
            last_canonical = last_trade_date(canonical)
            logger.debug("Canonical returned %s candles, last date: %s", len(canonical), last_canonical)

            if last_canonical is not None and last_canonical >= end:
                logger.debug("Canonical source covers %s (%s to %s)", key, start, end)
                return canonical

            gap_start = start if last_canonical is None else max(start, last_canonical + timedelta(days=1))
            external = self._fetch_external(key, gap_start, end)
            if not external:
                if self.external is not None:
                    logger.info("External source returned no data for %s (%s to %s), using canonical only", key, gap_start, end)
                return merge_candles(canonical, [])

            merged = merge_candles(canonical, external, start, end)
            logger.info(
                "Merged %s candles (canonical: %s, external: %s) for %s (%s to %s)",
                len(merged),
                len(canonical),
                len(external),
                key,
                start,
                end,
            )
            return merged

    def resolve_for_screening(self, symbol: str, start: date, end: date) -> ScreeningCandles:
        candles = self.resolve_candles(symbol, start, end)
        latest = last_trade_date(candles)
        stale = False
        if self.settings.require_latest_data_for_screening and latest is not None and latest < end:
            stale = True
            logger.warning("Screening data for %s is stale: latest is %s, requested %s", symbol, latest, end)
        return ScreeningCandles(candles=candles, stale=stale, latest_date=latest)

    def resolve_for_backtest(self, symbol: str, start: date, end: date) -> list[Candle]:
        if self.settings.allow_external_fallback_for_backtest:
            return self.resolve_candles(symbol, start, end)
        if start > end:
            return []
        key = _symbol_key(symbol)
        if key is None:
            return []
        logger.debug("External fallback disabled for backtest, using canonical only for %s", key)
        with log_context(data_source="DATABASE", symbol=key):
            return merge_candles(self._fetch_canonical(key, start, end), [])

    def resolve(self, symbol: str, start: date, end: date, mode: str = MODE_DEFAULT) -> Any:
        if mode == MODE_SCREENING:
            return self.resolve_for_screening(symbol, start, end)
        if mode == MODE_BACKTEST:
            return self.resolve_for_backtest(symbol, start, end)
        if mode == MODE_DEFAULT:
            return self.resolve_candles(symbol, start, end)
        raise ValueError(f"Unknown resolve mode: {mode}. Supported: {list(RESOLVE_MODES)}")

    def resolve_many(
        self,
        symbols: Iterable[str],
        start: date,
        end: date,
        mode: str = MODE_DEFAULT,
        max_workers: int | None = None,
    ) -> dict[str, Any]:
        """Resolve independent symbols in parallel; results are keyed by normalized symbol."""
        if mode not in RESOLVE_MODES:
            raise ValueError(f"Unknown resolve mode: {mode}. Supported: {list(RESOLVE_MODES)}")
        keys = sorted({key for key in (_symbol_key(symbol) for symbol in symbols) if key is not None})
        if not keys:
            return {}

        workers = max(1, min(int(max_workers or self.settings.max_workers), len(keys)))
        results: dict[str, Any] = {}
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.resolve, key, start, end, mode): key for key in keys}
            for future in as_completed(futures):
                results[futures[future]] = future.result()
        return {key: results[key] for key in keys}

    def current_price(self, symbol: str, as_of: date | None = None) -> Decimal:
        """Close of the latest candle within a one-week look-back ending at as_of (today by default)."""
        end = as_of or date.today()
        start = end - timedelta(days=CURRENT_PRICE_LOOKBACK_DAYS)
        candles = self.resolve_candles(symbol, start, end)
        if not candles:
            raise LookupError(f"No recent price data for {symbol} between {start} and {end}")
        return candles[-1].close

    def is_available(self) -> bool:
        probe = getattr(self.canonical, "is_available", None)
        return bool(probe()) if callable(probe) else True
