"""Performance analytics over closed trades."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Iterable, Optional

from common.market_metadata import quantize_ratio, round_price, to_decimal

from .models import EquityPoint, PerformanceSummary, SimulatedTrade

logger = logging.getLogger(__name__)

DEFAULT_STARTING_CAPITAL = Decimal("100000")

_ZERO = Decimal("0")
_ONE = Decimal("1")


def _resolve_capital(starting_capital: Any) -> Decimal:
    if starting_capital is None:
        return DEFAULT_STARTING_CAPITAL
    capital = to_decimal(starting_capital, "starting_capital")
    if capital <= 0:
        raise ValueError("starting_capital must be positive")
    return capital


def _mean(values: list[Decimal]) -> Decimal | None:
    if not values:
        return None
    return sum(values, _ZERO) / len(values)


def build_equity_curve(trades: Iterable[SimulatedTrade], starting_capital: Any = None) -> list[EquityPoint]:
    """
    One equity point per trade in exit-date order.

    Trades closing on the same date each get their own point, in input order.
    Trades without an exit date or pnl are skipped. The peak starts at the
    starting capital and moves up on ties; drawdown is clipped to [0, 1].
    """
    capital = _resolve_capital(starting_capital)
    plotted = [trade for trade in trades if trade.exit_date is not None and trade.pnl is not None]
    plotted.sort(key=lambda trade: trade.exit_date)

    equity = capital
    peak = capital
    curve: list[EquityPoint] = []
    for trade in plotted:
        equity += trade.pnl
        if equity >= peak:
            peak = equity
        drawdown = (peak - equity) / peak
        drawdown = min(max(drawdown, _ZERO), _ONE)
        curve.append(EquityPoint(date=trade.exit_date, equity=equity, peak=peak, drawdown=quantize_ratio(drawdown)))
    return curve


def max_drawdown(curve: Iterable[EquityPoint]) -> Decimal:
    worst = _ZERO
    for point in curve:
        if point.drawdown > worst:
            worst = point.drawdown
    return quantize_ratio(worst)


def summarize_performance(
    trades: Optional[Iterable[SimulatedTrade]],
    starting_capital: Any = None,
) -> PerformanceSummary:
    """Aggregate a trade set into win rate, total pnl, equity curve and drawdown."""
    if trades is None:
        raise ValueError("trades must not be None")
    capital = _resolve_capital(starting_capital)
    trade_list = list(trades)
    total = len(trade_list)

    pnls = [trade.pnl for trade in trade_list if trade.pnl is not None]
    winners = [pnl for pnl in pnls if pnl > 0]
    losers = [pnl for pnl in pnls if pnl < 0]
    gross_profit = sum(winners, _ZERO)
    gross_loss = sum(losers, _ZERO)
    total_pnl = sum(pnls, _ZERO)

    win_rate = quantize_ratio(Decimal(len(winners)) / total) if total else quantize_ratio(_ZERO)
    profit_factor = quantize_ratio(gross_profit / abs(gross_loss)) if losers else None
    returns = [trade.pnl_pct for trade in trade_list if trade.pnl_pct is not None]
    avg_return = _mean(returns)

    curve = build_equity_curve(trade_list, capital)
    avg_win = _mean(winners)
    avg_loss = _mean(losers)
    summary = PerformanceSummary(
        starting_capital=capital,
        total_trades=total,
        win_rate=win_rate,
        total_pnl=total_pnl,
        max_drawdown=max_drawdown(curve),
        equity_curve=tuple(curve),
        wins=len(winners),
        losses=len(losers),
        avg_win=round_price(avg_win) if avg_win is not None else None,
        avg_loss=round_price(avg_loss) if avg_loss is not None else None,
        profit_factor=profit_factor,
        avg_return_pct=quantize_ratio(avg_return) if avg_return is not None else None,
        ending_equity=curve[-1].equity if curve else capital,
    )
    logger.debug(
        "Summarized %s trades: win_rate=%s total_pnl=%s max_drawdown=%s",
        total,
        summary.win_rate,
        summary.total_pnl,
        summary.max_drawdown,
    )
    return summary


def compare_strategies(
    trades: Optional[Iterable[SimulatedTrade]],
    starting_capital: Any = None,
) -> dict[str, Any]:
    """Summarize each strategy code separately and name the leader on each headline metric."""
    if trades is None:
        raise ValueError("trades must not be None")
    grouped: dict[str, list[SimulatedTrade]] = {}
    for trade in trades:
        grouped.setdefault(trade.strategy_code, []).append(trade)

    summaries = {code: summarize_performance(grouped[code], starting_capital) for code in sorted(grouped)}

    def best(metric: str, lowest: bool = False) -> str | None:
        candidates = [(code, getattr(summary, metric)) for code, summary in summaries.items() if summary.total_trades > 0]
        candidates = [(code, value) for code, value in candidates if value is not None]
        if not candidates:
            return None
        if lowest:
            return min(candidates, key=lambda item: item[1])[0]
        return max(candidates, key=lambda item: item[1])[0]

    return {
        "strategies": summaries,
        "best_win_rate": best("win_rate"),
        "best_total_pnl": best("total_pnl"),
        "lowest_drawdown": best("max_drawdown", lowest=True),
        "best_profit_factor": best("profit_factor"),
    }
