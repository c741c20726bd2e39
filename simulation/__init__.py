"""Trade simulation from signals, and performance analytics over the resulting trades."""

from .analytics import (
    DEFAULT_STARTING_CAPITAL,
    build_equity_curve,
    compare_strategies,
    summarize_performance,
)
from .engine import CandleIndex, SymbolSeries, TradeSimulator, execute_trades, load_signals_csv
from .exit_rules import (
    DEFAULT_EXIT_RULE_TABLE,
    ExitReason,
    ExitRule,
    ExitRuleTable,
    find_exit,
    load_exit_rule_table,
    normalize_strategy_code,
)
from .models import (
    EquityPoint,
    PerformanceSummary,
    Side,
    Signal,
    SignalIssue,
    SimulatedTrade,
    SimulationResult,
)
from .reporting import ReportConfig, load_trades_csv, trades_to_frame, write_simulation_artifacts

__all__ = [
    "DEFAULT_STARTING_CAPITAL",
    "build_equity_curve",
    "compare_strategies",
    "summarize_performance",
    "CandleIndex",
    "SymbolSeries",
    "TradeSimulator",
    "execute_trades",
    "load_signals_csv",
    "DEFAULT_EXIT_RULE_TABLE",
    "ExitReason",
    "ExitRule",
    "ExitRuleTable",
    "find_exit",
    "load_exit_rule_table",
    "normalize_strategy_code",
    "EquityPoint",
    "PerformanceSummary",
    "Side",
    "Signal",
    "SignalIssue",
    "SimulatedTrade",
    "SimulationResult",
    "ReportConfig",
    "load_trades_csv",
    "trades_to_frame",
    "write_simulation_artifacts",
]
