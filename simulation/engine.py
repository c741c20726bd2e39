"""Signal-to-trade simulation over daily candles."""

from __future__ import annotations

import bisect
import csv
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional

from common.errors import ComputationError
from common.logging_setup import log_context
from common.market_metadata import quantize_ratio
from marketdata.models import Candle

from .exit_rules import DEFAULT_HOLDING_DAYS, ExitRule, ExitRuleTable, find_exit
from .models import (
    ISSUE_COMPUTATION_ERROR,
    ISSUE_NO_ENTRY_CANDLE,
    ISSUE_NO_EXIT,
    ISSUE_UNSUPPORTED_SIDE,
    REQUIRED_SIGNAL_COLUMNS,
    Side,
    Signal,
    SignalIssue,
    SimulatedTrade,
    SimulationResult,
)

logger = logging.getLogger(__name__)


@dataclass
class SymbolSeries:
    """One symbol's candles, ascending by date, with O(1) date lookup."""

    symbol: str
    dates: list[date] = field(default_factory=list)
    closes: list[Decimal] = field(default_factory=list)
    _position: dict[date, int] = field(default_factory=dict, repr=False)

    @classmethod
    def from_candles(cls, symbol: str, candles: Iterable[Candle]) -> "SymbolSeries":
        by_date: dict[date, Candle] = {}
        for candle in candles:
            by_date[candle.trade_date] = candle
        ordered = sorted(by_date)
        return cls(
            symbol=symbol,
            dates=ordered,
            closes=[by_date[day].close for day in ordered],
            _position={day: index for index, day in enumerate(ordered)},
        )

    def __len__(self) -> int:
        return len(self.dates)

    def has(self, trade_date: date) -> bool:
        return trade_date in self._position

    def close_on(self, trade_date: date) -> Decimal | None:
        index = self._position.get(trade_date)
        return self.closes[index] if index is not None else None

    def next_date_after(self, trade_date: date) -> date | None:
        index = bisect.bisect_right(self.dates, trade_date)
        return self.dates[index] if index < len(self.dates) else None

    def path_after(self, trade_date: date) -> Iterator[tuple[date, Decimal]]:
        """Lazily yield (date, close) strictly after trade_date; call again to restart."""
        start = bisect.bisect_right(self.dates, trade_date)
        for index in range(start, len(self.dates)):
            yield self.dates[index], self.closes[index]


class CandleIndex:
    """Per-symbol candle series built from a flat candle list."""

    def __init__(self, candles: Iterable[Candle]):
        grouped: dict[str, list[Candle]] = {}
        for candle in candles:
            grouped.setdefault(candle.symbol, []).append(candle)
        self._series = {symbol: SymbolSeries.from_candles(symbol, rows) for symbol, rows in grouped.items()}

    def series(self, symbol: str) -> SymbolSeries | None:
        return self._series.get(symbol)

    def symbols(self) -> list[str]:
        return sorted(self._series)


def calculate_pnl(entry_price: Decimal, exit_price: Decimal, quantity: int) -> Decimal:
    return (exit_price - entry_price) * quantity


def calculate_pnl_pct(entry_price: Decimal, exit_price: Decimal) -> Decimal:
    """Fractional return, four places half-up. A zero entry price cannot produce a return."""
    if entry_price == 0:
        raise ComputationError("entry price is zero, cannot compute return")
    return quantize_ratio((exit_price - entry_price) / entry_price)


@dataclass
class _GroupOutcome:
    trades: list[SimulatedTrade] = field(default_factory=list)
    issues: list[SignalIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class TradeSimulator:
    """
    Turn signals into closed trades.

    Signals are grouped by symbol. Within a group they are processed one at a
    time in signal-date order (stable for equal dates); separate groups run on
    a thread pool. A signal that cannot become a trade is reported as a
    SignalIssue and the batch carries on.
    """

    def __init__(
        self,
        exit_rules: ExitRuleTable | Mapping[str, Any] | None = None,
        holding_days: int = DEFAULT_HOLDING_DAYS,
        max_workers: int = 4,
    ):
        if isinstance(exit_rules, ExitRuleTable):
            self.exit_rules = exit_rules
        else:
            self.exit_rules = ExitRuleTable(exit_rules)
        if holding_days < 1:
            raise ValueError("holding_days must be >= 1")
        self.holding_days = int(holding_days)
        self.max_workers = max(1, int(max_workers))

    def _simulate_signal(
        self,
        signal: Signal,
        series: SymbolSeries | None,
        outcome: _GroupOutcome,
    ) -> None:
        def issue(code: str, message: str) -> None:
            outcome.issues.append(SignalIssue(signal.signal_id, signal.symbol, code, message))

        if signal.side is not Side.BUY:
            logger.warning("Signal %s has side %s; only BUY signals are simulated", signal.signal_id, signal.side.value)
            issue(ISSUE_UNSUPPORTED_SIDE, f"side {signal.side.value} is not simulated")
            return

        if series is None or not series.has(signal.signal_date):
            logger.warning("Entry candle not found for %s at signal date %s", signal.symbol, signal.signal_date)
            issue(ISSUE_NO_ENTRY_CANDLE, f"no candle on {signal.signal_date.isoformat()}")
            return

        rule = self.exit_rules.lookup(signal.strategy_code)
        if rule is ExitRule.UNMAPPED:
            message = f"Unknown strategy code {signal.strategy_code!r} on signal {signal.signal_id}; using stop-only exit"
            logger.warning("Unknown strategy code %r on signal %s; using stop-only exit", signal.strategy_code, signal.signal_id)
            outcome.warnings.append(message)

        decision = find_exit(
            rule,
            series.path_after(signal.signal_date),
            entry_date=signal.signal_date,
            stop_loss=signal.stop_loss,
            target_price=signal.target_price,
            holding_days=self.holding_days,
        )
        if decision is None:
            logger.debug("No exit found for %s at %s - open position, skipping", signal.symbol, signal.signal_date)
            issue(ISSUE_NO_EXIT, f"no exit condition met under {rule.value}")
            return

        try:
            pnl_pct = calculate_pnl_pct(signal.entry_price, decision.exit_price)
        except ComputationError as exc:
            logger.error("Cannot compute return for signal %s: %s", signal.signal_id, exc)
            issue(ISSUE_COMPUTATION_ERROR, str(exc))
            return

        trade = SimulatedTrade(
            signal_id=signal.signal_id,
            symbol=signal.symbol,
            strategy_code=signal.strategy_code,
            entry_date=signal.signal_date,
            entry_price=signal.entry_price,
            exit_date=decision.exit_date,
            exit_price=decision.exit_price,
            quantity=signal.quantity,
            pnl=calculate_pnl(signal.entry_price, decision.exit_price, signal.quantity),
            pnl_pct=pnl_pct,
            exit_reason=decision.reason,
            exit_rule=rule,
        )
        logger.debug(
            "Created trade %s: entry=%s exit=%s reason=%s pnl=%s pnl_pct=%s",
            trade.signal_id,
            trade.entry_date,
            trade.exit_date,
            trade.exit_reason.value,
            trade.pnl,
            trade.pnl_pct,
        )
        outcome.trades.append(trade)

    def _simulate_group(self, symbol: str, grouped: list[tuple[int, Signal]], series: SymbolSeries | None) -> _GroupOutcome:
        outcome = _GroupOutcome()
        with log_context(symbol=symbol):
            # sorted() is stable, so equal signal dates keep input order.
            for _, signal in sorted(grouped, key=lambda item: item[1].signal_date):
                self._simulate_signal(signal, series, outcome)
        return outcome

    def run(self, signals: Optional[Iterable[Signal]], candles: Optional[Iterable[Candle]]) -> SimulationResult:
        if signals is None:
            raise ValueError("signals must not be None")
        if candles is None:
            raise ValueError("candles must not be None")

        signal_list = list(signals)
        if not signal_list:
            logger.info("No signals provided for simulation")
            return SimulationResult(signal_count=0)

        candle_list = list(candles)
        index = CandleIndex(candle_list)
        logger.info("Simulating %s signals with %s candles", len(signal_list), len(candle_list))

        grouped: dict[str, list[tuple[int, Signal]]] = {}
        for order, signal in enumerate(signal_list):
            grouped.setdefault(signal.symbol, []).append((order, signal))

        max_workers = min(self.max_workers, max(1, len(grouped)))
        outcomes: dict[str, _GroupOutcome] = {}
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            future_map = {
                pool.submit(self._simulate_group, symbol, batch, index.series(symbol)): symbol
                for symbol, batch in grouped.items()
            }
            for future in as_completed(future_map):
                outcomes[future_map[future]] = future.result()

        # Symbols in first-seen order; each symbol in FIFO order.
        result = SimulationResult(signal_count=len(signal_list))
        for symbol in grouped:
            outcome = outcomes[symbol]
            result.trades.extend(outcome.trades)
            result.issues.extend(outcome.issues)
            result.warnings.extend(outcome.warnings)

        logger.info(
            "Simulation produced %s trades from %s signals (%s issues)",
            len(result.trades),
            len(signal_list),
            len(result.issues),
        )
        return result


def execute_trades(
    signals: Optional[Iterable[Signal]],
    candles: Optional[Iterable[Candle]],
    exit_rules: ExitRuleTable | Mapping[str, Any] | None = None,
    holding_days: int = DEFAULT_HOLDING_DAYS,
) -> list[SimulatedTrade]:
    """Simulate signals and return only the closed trades."""
    return TradeSimulator(exit_rules=exit_rules, holding_days=holding_days).run(signals, candles).trades


def load_signals_csv(path: str | Path) -> list[Signal]:
    """Read and validate signals from CSV."""
    csv_path = Path(path)
    with csv_path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        fieldnames = reader.fieldnames or []
        missing = [column for column in REQUIRED_SIGNAL_COLUMNS if column not in fieldnames]
        if missing:
            raise ValueError(f"Missing required signal columns: {missing}")

        seen_ids: set[str] = set()
        signals: list[Signal] = []
        for line_no, row in enumerate(reader, start=2):
            try:
                signal = Signal.from_record(row)
            except ValueError as exc:
                raise ValueError(f"Invalid signal row {line_no} in {csv_path}: {exc}") from exc
            if signal.signal_id in seen_ids:
                raise ValueError(f"Duplicate signal_id: {signal.signal_id}")
            seen_ids.add(signal.signal_id)
            signals.append(signal)
    logger.info("Loaded %s signals from %s", len(signals), csv_path)
    return signals
