"""Yahoo Finance chart API client and the external candle source built on it."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from datetime import date, datetime, time as dt_time, timezone
from typing import Any, Callable, Mapping

import requests

from common.errors import ExternalSourceError
from common.logging_setup import log_context
from common.market_metadata import normalize_market, normalize_symbol, to_decimal, to_external_symbol

from .models import SOURCE_EXTERNAL, Candle

logger = logging.getLogger(__name__)

DEFAULT_CACHE_ENTRIES = 256
DEFAULT_BASE_URL = "https://query1.finance.yahoo.com/v8/finance/chart"
SOURCE_NAME = "YAHOO"


def _epoch_seconds(day: date, end_of_day: bool = False) -> int:
    moment = datetime.combine(day, dt_time(23, 59, 59) if end_of_day else dt_time(0, 0), tzinfo=timezone.utc)
    return int(moment.timestamp())


def _value_at(values: list[Any] | None, index: int) -> Any:
    if not values or index >= len(values):
        return None
    return values[index]


def _parse_chart_payload(payload: Mapping[str, Any], symbol: str, start: date, end: date) -> list[Candle]:
    chart = payload.get("chart") or {}
    error = chart.get("error")
    if error:
        description = error.get("description") if isinstance(error, Mapping) else error
        raise ExternalSourceError(SOURCE_NAME, symbol, str(description))

    results = chart.get("result") or []
    if not results:
        return []
    result = results[0] or {}

    timestamps = result.get("timestamp") or []
    quotes = (result.get("indicators") or {}).get("quote") or []
    if not timestamps or not quotes:
        return []
    quote = quotes[0] or {}
    gmtoffset = int((result.get("meta") or {}).get("gmtoffset") or 0)

    by_date: dict[date, Candle] = {}
    for index, stamp in enumerate(timestamps):
        trade_date = datetime.fromtimestamp(int(stamp) + gmtoffset, tz=timezone.utc).date()
        if trade_date < start or trade_date > end:
            continue
        open_raw = _value_at(quote.get("open"), index)
        high_raw = _value_at(quote.get("high"), index)
        low_raw = _value_at(quote.get("low"), index)
        close_raw = _value_at(quote.get("close"), index)
        if open_raw is None or high_raw is None or low_raw is None or close_raw is None:
            continue
        volume_raw = _value_at(quote.get("volume"), index)
        try:
            by_date[trade_date] = Candle(
                symbol=symbol,
                trade_date=trade_date,
                open=to_decimal(open_raw, "open"),
                high=to_decimal(high_raw, "high"),
                low=to_decimal(low_raw, "low"),
                close=to_decimal(close_raw, "close"),
                volume=int(volume_raw or 0),
                source=SOURCE_EXTERNAL,
            )
        except ValueError as exc:
            logger.debug("Skipping malformed chart row %s for %s: %s", index, symbol, exc)

    return [by_date[day] for day in sorted(by_date)]


class YahooChartClient:
    """Thin wrapper over the v8 chart endpoint returning daily candles."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 3.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "Mozilla/5.0 (quantlab-engine)"})

    def _get_json(self, ticker: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{ticker}"
        try:
            response = self._session.get(url, params=params, timeout=self.timeout_seconds)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as exc:
            raise ExternalSourceError(SOURCE_NAME, ticker, f"timed out after {self.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise ExternalSourceError(SOURCE_NAME, ticker, str(exc)) from exc
        except ValueError as exc:
            raise ExternalSourceError(SOURCE_NAME, ticker, f"invalid JSON payload: {exc}") from exc

    def fetch_daily_candles(self, ticker: str, start: date, end: date) -> list[Candle]:
        """
        Fetch daily candles for a feed ticker between start and end, inclusive.

        Candles are labelled with the ticker as given; callers relabel them
        with their internal symbol. Rows with a missing open/high/low/close are
        skipped and dates follow the exchange's own UTC offset.

        Raises:
            ExternalSourceError: transport, HTTP status, or payload errors.
        """
        if start > end:
            return []
        params = {
            "interval": "1d",
            "period1": _epoch_seconds(start),
            "period2": _epoch_seconds(end, end_of_day=True),
        }
        logger.debug("Fetching Yahoo chart for %s from %s to %s", ticker, start, end)
        payload = self._get_json(ticker, params)
        candles = _parse_chart_payload(payload, ticker, start, end)
        if not candles:
            logger.warning("No data returned from Yahoo Finance for %s", ticker)
        return candles

    def is_available(self, probe_ticker: str = "AAPL") -> bool:
        try:
            payload = self._get_json(probe_ticker, {"interval": "1d", "range": "1d"})
        except ExternalSourceError as exc:
            logger.debug("Yahoo Finance API unavailable: %s", exc)
            return False
        return bool((payload.get("chart") or {}).get("result"))

    def close(self) -> None:
        self._session.close()


class YahooMarketDataSource:
    """
    External candle source: maps internal symbols to feed tickers, relabels the
    returned candles, and caches non-empty results for a short TTL.
    """

    def __init__(
        self,
        client: YahooChartClient | None = None,
        default_market: str = "US",
        symbol_markets: Mapping[str, str] | None = None,
        cache_ttl_minutes: int = 15,
        clock: Callable[[], float] = time.monotonic,
        max_cache_entries: int = DEFAULT_CACHE_ENTRIES,
    ):
        self.client = client or YahooChartClient()
        self.default_market = normalize_market(default_market)
        self.cache_ttl_seconds = max(0, int(cache_ttl_minutes)) * 60
        self._clock = clock
        self._markets: dict[str, str] = {}
        self.max_cache_entries = max(1, int(max_cache_entries))
        self._cache: OrderedDict[tuple[str, date, date], tuple[float, list[Candle]]] = OrderedDict()
        self._lock = threading.Lock()
        for symbol, market in (symbol_markets or {}).items():
            self.register_symbol(symbol, market)

    @classmethod
    def from_settings(cls, settings: Any, session: requests.Session | None = None) -> "YahooMarketDataSource":
        client = YahooChartClient(
            base_url=settings.yahoo_base_url,
            timeout_seconds=settings.yahoo_timeout_seconds,
            session=session,
        )
        return cls(
            client=client,
            default_market=settings.default_market,
            symbol_markets=settings.symbol_markets,
            cache_ttl_minutes=settings.yahoo_cache_ttl_minutes,
        )

    def register_symbol(self, symbol: str, market: str) -> None:
        with self._lock:
            self._markets[normalize_symbol(symbol)] = normalize_market(market, default=self.default_market)

    def market_for(self, symbol: str) -> str:
        with self._lock:
            return self._markets.get(normalize_symbol(symbol), self.default_market)

    def external_symbol(self, symbol: str) -> str:
        return to_external_symbol(symbol, self.market_for(symbol))

    def _cached(self, key: tuple[str, date, date]) -> list[Candle] | None:
        if self.cache_ttl_seconds <= 0:
            return None
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, candles = entry
            if self._clock() - stored_at > self.cache_ttl_seconds:
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            return list(candles)

    def _store(self, key: tuple[str, date, date], candles: list[Candle]) -> None:
        if self.cache_ttl_seconds <= 0 or not candles:
            return
        with self._lock:
            now = self._clock()
            expired = [item for item, (stored_at, _) in self._cache.items() if now - stored_at > self.cache_ttl_seconds]
            for item in expired:
                del self._cache[item]
            self._cache[key] = (now, list(candles))
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_cache_entries:
                self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_daily_candles(self, symbol: str, start: date, end: date) -> list[Candle]:
        internal = normalize_symbol(symbol)
        key = (internal, start, end)
        cached = self._cached(key)
        if cached is not None:
            logger.debug("Yahoo cache hit for %s %s..%s", internal, start, end)
            return cached

        ticker = self.external_symbol(internal)
        with log_context(data_source=SOURCE_NAME, symbol=internal):
            raw = self.client.fetch_daily_candles(ticker, start, end)
            candles = [
                Candle(
                    symbol=internal,
                    trade_date=item.trade_date,
                    open=item.open,
                    high=item.high,
                    low=item.low,
                    close=item.close,
                    volume=item.volume,
                    source=SOURCE_EXTERNAL,
                )
                for item in raw
            ]
            logger.info("Fetched %s candles from %s (%s) between %s and %s", len(candles), SOURCE_NAME, ticker, start, end)

        self._store(key, candles)
        return candles