"""Daily candle model shared by every candle source."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from common.market_metadata import normalize_symbol, parse_trade_date, to_decimal

SOURCE_CANONICAL = "CANONICAL"
SOURCE_EXTERNAL = "EXTERNAL"

CANDLE_COLUMNS: tuple[str, ...] = ("date", "open", "high", "low", "close", "volume")


@dataclass(frozen=True)
class Candle:
    """One instrument's OHLCV bar for one trade date."""

    symbol: str
    trade_date: date
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int = 0
    source: str = SOURCE_CANONICAL

    def __post_init__(self) -> None:
        for name in ("open", "high", "low", "close"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative for {self.symbol} on {self.trade_date}")
        if self.volume < 0:
            raise ValueError(f"volume must be non-negative for {self.symbol} on {self.trade_date}")

    @property
    def key(self) -> tuple[str, date]:
        return (self.symbol, self.trade_date)

    @classmethod
    def from_record(cls, row: Mapping[str, Any], symbol: str | None = None, source: str = SOURCE_CANONICAL) -> "Candle":
        raw_symbol = symbol if symbol is not None else row.get("symbol")
        volume_raw = row.get("volume")
        volume_text = str(volume_raw).strip() if volume_raw is not None else ""
        return cls(
            symbol=normalize_symbol(str(raw_symbol or "")),
            trade_date=parse_trade_date(row.get("date") or row.get("trade_date"), "date"),
            open=to_decimal(row.get("open"), "open"),
            high=to_decimal(row.get("high"), "high"),
            low=to_decimal(row.get("low"), "low"),
            close=to_decimal(row.get("close"), "close"),
            volume=int(Decimal(volume_text)) if volume_text and volume_text.lower() != "nan" else 0,
            source=source,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "date": self.trade_date.isoformat(),
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": self.volume,
            "source": self.source,
        }


def last_trade_date(candles: list[Candle]) -> date | None:
    """Latest trade date present in candles, or None when empty."""
    if not candles:
        return None
    return max(candle.trade_date for candle in candles)
