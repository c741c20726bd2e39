"""Shared fixtures for the market-data and simulation tests."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from marketdata.models import SOURCE_CANONICAL, Candle
from simulation.models import Signal, SimulatedTrade


def make_candle(symbol, trade_date, close, source=SOURCE_CANONICAL, volume=1000):
    price = Decimal(str(close))
    return Candle(
        symbol=symbol,
        trade_date=trade_date,
        open=price,
        high=price,
        low=price,
        close=price,
        volume=volume,
        source=source,
    )


def make_series(symbol, first_date, closes, source=SOURCE_CANONICAL):
    """One candle per consecutive calendar day starting at first_date."""
    return [make_candle(symbol, first_date + timedelta(days=offset), close, source) for offset, close in enumerate(closes)]


def make_trade(signal_id, pnl, exit_date, strategy_code="EMA_BREAKOUT", symbol="AAPL", pnl_pct=None):
    pnl_value = None if pnl is None else Decimal(str(pnl))
    return SimulatedTrade(
        signal_id=signal_id,
        symbol=symbol,
        strategy_code=strategy_code,
        entry_date=exit_date - timedelta(days=1) if exit_date else date(2024, 1, 1),
        entry_price=Decimal("100"),
        exit_date=exit_date,
        exit_price=Decimal("100"),
        quantity=1,
        pnl=pnl_value,
        pnl_pct=Decimal(str(pnl_pct)) if pnl_pct is not None else None,
    )


@pytest.fixture
def candle_factory():
    return make_series


@pytest.fixture
def trade_factory():
    return make_trade


@pytest.fixture
def signal_factory():
    def _make(
        signal_id="S1",
        symbol="AAPL",
        signal_date=date(2024, 1, 1),
        entry_price="100",
        stop_loss="95",
        target_price="110",
        quantity=10,
        strategy_code="stop-or-target",
        **extra,
    ):
        return Signal(
            signal_id=signal_id,
            symbol=symbol,
            signal_date=signal_date,
            entry_price=Decimal(entry_price),
            stop_loss=Decimal(stop_loss) if stop_loss is not None else None,
            target_price=Decimal(target_price) if target_price is not None else None,
            quantity=quantity,
            strategy_code=strategy_code,
            **extra,
        )

    return _make


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
