"""Candle source contract and an in-memory implementation."""

from __future__ import annotations

import threading
from datetime import date
from typing import Iterable, Protocol

from common.market_metadata import normalize_symbol

from .models import Candle


class CandleSource(Protocol):
    """Anything that returns ascending daily candles for (symbol, start, end), inclusive."""

    def get_daily_candles(self, symbol: str, start: date, end: date) -> list[Candle]:
        ...


class StaticCandleSource:
    """Dictionary-backed candle source; later rows for the same date replace earlier ones."""

    def __init__(self, candles: Iterable[Candle] = ()):
        self._series: dict[str, dict[date, Candle]] = {}
        self._lock = threading.Lock()
        self.add(candles)

    def add(self, candles: Iterable[Candle]) -> None:
        with self._lock:
            for candle in candles:
                self._series.setdefault(candle.symbol, {})[candle.trade_date] = candle

    def symbols(self) -> list[str]:
        with self._lock:
            return sorted(self._series)

    def get_daily_candles(self, symbol: str, start: date, end: date) -> list[Candle]:
        key = normalize_symbol(symbol)
        with self._lock:
            series = dict(self._series.get(key, {}))
        return [series[day] for day in sorted(series) if start <= day <= end]
