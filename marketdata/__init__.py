"""Daily market data: canonical store, external feed and the resolver that merges them."""

from .circuit_breaker import BreakerState, FailureTracker
from .models import SOURCE_CANONICAL, SOURCE_EXTERNAL, Candle, last_trade_date
from .resolver import (
    MODE_BACKTEST,
    MODE_DEFAULT,
    MODE_SCREENING,
    MarketDataResolver,
    ScreeningCandles,
    merge_candles,
)
from .sources import CandleSource, StaticCandleSource
from .store import CandleStore, write_candles_csv
from .yahoo import YahooChartClient, YahooMarketDataSource

__all__ = [
    "BreakerState",
    "FailureTracker",
    "SOURCE_CANONICAL",
    "SOURCE_EXTERNAL",
    "Candle",
    "last_trade_date",
    "MODE_BACKTEST",
    "MODE_DEFAULT",
    "MODE_SCREENING",
    "MarketDataResolver",
    "ScreeningCandles",
    "merge_candles",
    "CandleSource",
    "StaticCandleSource",
    "CandleStore",
    "write_candles_csv",
    "YahooChartClient",
    "YahooMarketDataSource",
]
