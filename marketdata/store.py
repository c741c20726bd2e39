"""Canonical daily candle store backed by one CSV file per symbol."""

from __future__ import annotations

import csv
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import numpy as np

from common.logging_setup import log_context
from common.market_metadata import normalize_symbol

from .models import CANDLE_COLUMNS, SOURCE_CANONICAL, Candle

logger = logging.getLogger(__name__)

_DEFAULT_MAX_SERIES = 512
_REQUIRED_COLUMNS = set(CANDLE_COLUMNS)


def _to_day(value: date) -> np.datetime64:
    return np.datetime64(value.isoformat(), "D")


@dataclass(frozen=True)
class DailySeries:
    """Immutable date-sorted candle series with a numpy date index for range slicing."""

    symbol: str
    dates: np.ndarray
    candles: tuple[Candle, ...]

    @property
    def rows(self) -> int:
        return len(self.candles)

    @property
    def first_date(self) -> date | None:
        return self.candles[0].trade_date if self.candles else None

    @property
    def last_date(self) -> date | None:
        return self.candles[-1].trade_date if self.candles else None

    def slice_by_date(self, start: date | None = None, end: date | None = None) -> list[Candle]:
        left = 0 if start is None else int(np.searchsorted(self.dates, _to_day(start), side="left"))
        right = self.rows if end is None else int(np.searchsorted(self.dates, _to_day(end), side="right"))
        if right < left:
            right = left
        return list(self.candles[left:right])


def _build_series(symbol: str, candles: list[Candle]) -> DailySeries:
    # Stable sort, then keep the last row seen for each date.
    by_date: dict[date, Candle] = {}
    for candle in sorted(candles, key=lambda item: item.trade_date):
        by_date[candle.trade_date] = candle
    ordered = tuple(by_date[day] for day in sorted(by_date))
    dates = np.asarray([candle.trade_date.isoformat() for candle in ordered], dtype="datetime64[D]")
    return DailySeries(symbol=symbol, dates=dates, candles=ordered)


def _read_series_csv(path: Path, symbol: str) -> DailySeries:
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        fieldnames = {str(name).strip().lower() for name in (reader.fieldnames or [])}
        missing = sorted(_REQUIRED_COLUMNS.difference(fieldnames))
        if missing:
            raise ValueError(f"Candle schema validation failed for {path}: missing columns {missing}")

        candles: list[Candle] = []
        for line_no, row in enumerate(reader, start=2):
            normalized = {str(key).strip().lower(): value for key, value in row.items() if key is not None}
            if not str(normalized.get("date") or "").strip():
                continue
            try:
                candles.append(Candle.from_record(normalized, symbol=symbol, source=SOURCE_CANONICAL))
            except ValueError as exc:
                raise ValueError(f"Invalid candle row {line_no} in {path}: {exc}") from exc

    return _build_series(symbol, candles)


class CandleStore:
    """Load, validate and cache canonical daily candles stored as CSV files."""

    def __init__(self, data_root: str | Path, max_series: int = _DEFAULT_MAX_SERIES):
        self.data_root = Path(data_root)
        self.max_series = max(1, int(max_series))
        self._series: OrderedDict[str, DailySeries] = OrderedDict()
        self._loading_keys: set[str] = set()
        self._lock = threading.RLock()
        self._cv = threading.Condition(self._lock)

    def csv_path(self, symbol: str) -> Path:
        key = normalize_symbol(symbol)
        return self.data_root / key / f"candles_{key}_D.csv"

    def _promote_cached_locked(self, key: str) -> DailySeries | None:
        cached = self._series.get(key)
        if cached is None:
            return None
        self._series.move_to_end(key)
        return cached

    def _load_series(self, symbol: str) -> DailySeries | None:
        key = normalize_symbol(symbol)

        with self._cv:
            cached = self._promote_cached_locked(key)
            if cached is not None:
                return cached

            while key in self._loading_keys:
                self._cv.wait()
                cached = self._promote_cached_locked(key)
                if cached is not None:
                    return cached

            self._loading_keys.add(key)

        path = self.csv_path(key)
        try:
            if not path.exists():
                logger.warning("No canonical candle file for %s (%s)", key, path)
                return None
            series = _read_series_csv(path, key)
            logger.debug("Loaded canonical candles %s rows=%s", key, series.rows)
        finally:
            with self._cv:
                self._loading_keys.discard(key)
                self._cv.notify_all()

        with self._cv:
            self._series[key] = series
            self._series.move_to_end(key)
            while len(self._series) > self.max_series:
                self._series.popitem(last=False)
            return series

    def get_daily_candles(self, symbol: str, start: date, end: date) -> list[Candle]:
        """Return canonical candles for [start, end], ascending; empty when the symbol is unknown."""
        with log_context(data_source="DATABASE", symbol=symbol):
            series = self._load_series(symbol)
            if series is None:
                return []
            candles = series.slice_by_date(start, end)
            logger.info("Fetched %s candles from DATABASE for %s between %s and %s", len(candles), series.symbol, start, end)
            return candles

    def list_symbols(self) -> list[str]:
        """Return symbols that have a candle CSV under data_root."""
        if not self.data_root.exists():
            return []
        symbols: list[str] = []
        for child in sorted(self.data_root.iterdir()):
            if child.is_dir() and (child / f"candles_{child.name}_D.csv").exists():
                symbols.append(child.name.upper())
        return symbols

    def evict(self, symbol: str | None = None) -> None:
        """Drop one symbol (or everything) from the cache so the next read hits disk."""
        with self._cv:
            if symbol is None:
                self._series.clear()
            else:
                self._series.pop(normalize_symbol(symbol), None)
            self._cv.notify_all()

    def is_available(self) -> bool:
        return self.data_root.exists() and self.data_root.is_dir()

    def build_manifest(self, symbols: list[str] | None = None) -> dict[str, Any]:
        """Build a coverage manifest for the selected symbols (all stored symbols by default)."""
        selected = sorted({normalize_symbol(item) for item in (symbols or self.list_symbols())})
        files: dict[str, dict[str, Any]] = {}
        rows_total = 0
        valid_file_count = 0

        for symbol in selected:
            path = self.csv_path(symbol)
            entry: dict[str, Any] = {
                "symbol": symbol,
                "file_path": str(path),
                "exists": path.exists(),
                "rows": 0,
                "first_date": None,
                "last_date": None,
                "schema_ok": False,
                "error": None,
            }
            if not path.exists():
                entry["error"] = "file_missing"
                files[symbol] = entry
                continue

            try:
                series = self._load_series(symbol)
            except (OSError, ValueError) as exc:
                entry["error"] = f"{type(exc).__name__}: {exc}"
                files[symbol] = entry
                continue

            if series is not None:
                entry["rows"] = series.rows
                entry["first_date"] = series.first_date.isoformat() if series.first_date else None
                entry["last_date"] = series.last_date.isoformat() if series.last_date else None
                entry["schema_ok"] = True
                rows_total += series.rows
                valid_file_count += 1
            files[symbol] = entry

        return {
            "data_root": str(self.data_root),
            "symbol_count": len(selected),
            "valid_file_count": valid_file_count,
            "rows_total": rows_total,
            "files": files,
        }


def write_candles_csv(path: str | Path, candles: list[Candle]) -> Path:
    """Write candles in the store's CSV layout (used for fixtures and resolve exports)."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(CANDLE_COLUMNS))
        writer.writeheader()
        for candle in sorted(candles, key=lambda item: item.trade_date):
            record = candle.to_record()
            writer.writerow({column: record[column] for column in CANDLE_COLUMNS})
    return out_path
