"""CLI for candle resolution, signal simulation, and trade-ledger reporting."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date, timedelta
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from common.logging_setup import setup_logging  # noqa: E402
from common.market_metadata import normalize_market, normalize_symbol, parse_trade_date  # noqa: E402
from common.settings import EngineSettings, load_settings  # noqa: E402
from marketdata import (  # noqa: E402
    MODE_BACKTEST,
    MODE_DEFAULT,
    MODE_SCREENING,
    CandleStore,
    MarketDataResolver,
    ScreeningCandles,
    YahooMarketDataSource,
    write_candles_csv,
)
from simulation import (  # noqa: E402
    ReportConfig,
    TradeSimulator,
    load_exit_rule_table,
    load_signals_csv,
    load_trades_csv,
    summarize_performance,
    write_simulation_artifacts,
)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Market-data resolution and trade simulation CLI")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--env-file", help="Optional .env file with QUANTLAB_* settings")
    parser.add_argument("--config", help="Optional JSON settings file (overrides the environment)")
    parser.add_argument("--data-root", help="Canonical candle root (overrides QUANTLAB_CANDLE_DATA_ROOT)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve daily candles for one symbol")
    resolve_parser.add_argument("--symbol", required=True, help="Internal symbol, e.g. RELIANCE or AAPL")
    resolve_parser.add_argument("--start", required=True, help="Start date (YYYY-MM-DD)")
    resolve_parser.add_argument("--end", required=True, help="End date (YYYY-MM-DD)")
    resolve_parser.add_argument("--market", help="Home market for the external feed (INDIA or US)")
    resolve_parser.add_argument(
        "--mode",
        default=MODE_DEFAULT,
        choices=[MODE_DEFAULT, MODE_SCREENING, MODE_BACKTEST],
        help="Serving policy applied on top of the merge",
    )
    resolve_parser.add_argument("--out", help="Write candles to this CSV instead of stdout")

    simulate_parser = subparsers.add_parser("simulate", help="Simulate a signals CSV against resolved candles")
    simulate_parser.add_argument("--signals-csv", required=True, help="Input signals CSV path")
    simulate_parser.add_argument("--report-dir", default="reports/simulation_run", help="Output directory")
    simulate_parser.add_argument("--starting-capital", help="Starting capital for the equity curve")
    simulate_parser.add_argument("--exit-rules", help="Optional JSON mapping of strategy code to exit rule")
    simulate_parser.add_argument("--end", help="Last candle date to resolve (default: today)")
    simulate_parser.add_argument(
        "--lookahead-days",
        type=int,
        default=120,
        help="Days after the latest signal to resolve when --end is not given",
    )

    report_parser = subparsers.add_parser("report-ledger", help="Summarize an existing trades CSV")
    report_parser.add_argument("--trades-csv", required=True, help="Input trades ledger CSV path")
    report_parser.add_argument("--report-dir", default="reports/ledger_run", help="Output directory")
    report_parser.add_argument("--starting-capital", help="Starting capital for the equity curve")

    return parser.parse_args(argv)


def _load_settings(args: argparse.Namespace) -> EngineSettings:
    settings = EngineSettings.from_path(args.config) if args.config else load_settings(args.env_file)
    if args.data_root:
        settings.candle_data_root = Path(args.data_root)
    return settings


def _build_resolver(settings: EngineSettings) -> MarketDataResolver:
    if settings.candle_data_root is None:
        raise ValueError("Candle data root is not configured (use --data-root or QUANTLAB_CANDLE_DATA_ROOT)")
    store = CandleStore(settings.candle_data_root)
    external = YahooMarketDataSource.from_settings(settings)
    return MarketDataResolver(store, external=external, settings=settings)


def _run_resolve(args: argparse.Namespace, settings: EngineSettings) -> int:
    logger = logging.getLogger(__name__)
    try:
        start = parse_trade_date(args.start, "start")
        end = parse_trade_date(args.end, "end")
        symbol = normalize_symbol(args.symbol)
        if args.market:
            settings.symbol_markets[symbol] = normalize_market(args.market)
        resolver = _build_resolver(settings)
        result = resolver.resolve(symbol, start, end, mode=args.mode)
    except (OSError, ValueError) as exc:
        logger.error(str(exc))
        return 3

    candles = result.candles if isinstance(result, ScreeningCandles) else result
    if isinstance(result, ScreeningCandles) and result.stale:
        logger.warning("Latest candle for %s is %s, older than requested end %s", symbol, result.latest_date, end)

    if args.out:
        out_path = write_candles_csv(args.out, candles)
        logger.info("Wrote %s candles to %s", len(candles), out_path)
    else:
        print("date,open,high,low,close,volume,source")
        for candle in candles:
            print(
                f"{candle.trade_date.isoformat()},{candle.open},{candle.high},{candle.low},"
                f"{candle.close},{candle.volume},{candle.source}"
            )
    logger.info("Resolved %s candles for %s (%s to %s, mode=%s)", len(candles), symbol, start, end, args.mode)
    return 0


def _run_simulate(args: argparse.Namespace, settings: EngineSettings) -> int:
    logger = logging.getLogger(__name__)
    signals_path = Path(args.signals_csv)
    if not signals_path.exists():
        logger.error("signals-csv does not exist: %s", signals_path)
        return 2
    if args.exit_rules and not Path(args.exit_rules).exists():
        logger.error("exit-rules does not exist: %s", args.exit_rules)
        return 2

    report_dir = Path(args.report_dir)
    try:
        signals = load_signals_csv(signals_path)
        exit_rules = load_exit_rule_table(args.exit_rules) if args.exit_rules else None
        resolver = _build_resolver(settings)

        symbols = sorted({signal.symbol for signal in signals})
        if signals:
            start = min(signal.signal_date for signal in signals)
            latest = max(signal.signal_date for signal in signals)
            end = parse_trade_date(args.end, "end") if args.end else min(
                date.today(), latest + timedelta(days=max(0, args.lookahead_days))
            )
        else:
            start = end = date.today()

        resolved = resolver.resolve_many(symbols, start, end, mode=MODE_BACKTEST, max_workers=settings.max_workers)
        candles = [candle for symbol in symbols for candle in resolved.get(symbol, [])]

        simulator = TradeSimulator(
            exit_rules=exit_rules,
            holding_days=settings.holding_days,
            max_workers=settings.max_workers,
        )
        result = simulator.run(signals, candles)
        performance = summarize_performance(result.trades, args.starting_capital)
        config = ReportConfig(
            data_root=settings.candle_data_root,
            report_dir=report_dir,
            source_csv=signals_path,
            start=start,
            end=end,
            symbols=symbols,
            starting_capital=performance.starting_capital,
            mode="simulate",
        )
        artifacts = write_simulation_artifacts(
            result.trades,
            performance,
            report_dir=report_dir,
            config=config,
            result=result,
            data_manifest=resolver.canonical.build_manifest(symbols) if symbols else {},
        )
    except (OSError, ValueError) as exc:
        logger.error(str(exc))
        return 3

    logger.info("Report dir: %s", artifacts["paths"]["report_dir"])
    logger.info("Signals: %s, trades: %s, issues: %s", result.signal_count, len(result.trades), len(result.issues))
    logger.info("Win rate: %s", performance.win_rate)
    logger.info("Total P&L: %s", performance.total_pnl)
    logger.info("Max drawdown: %s", performance.max_drawdown)
    return 0


def _run_report_ledger(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    trades_path = Path(args.trades_csv)
    if not trades_path.exists():
        logger.error("trades-csv does not exist: %s", trades_path)
        return 2

    report_dir = Path(args.report_dir)
    try:
        trades = load_trades_csv(trades_path)
        performance = summarize_performance(trades, args.starting_capital)
        config = ReportConfig(
            report_dir=report_dir,
            source_csv=trades_path,
            symbols=sorted({trade.symbol for trade in trades}),
            starting_capital=performance.starting_capital,
            mode="report-ledger",
        )
        artifacts = write_simulation_artifacts(trades, performance, report_dir=report_dir, config=config)
    except (OSError, ValueError) as exc:
        logger.error(str(exc))
        return 3

    logger.info("Report dir: %s", artifacts["paths"]["report_dir"])
    logger.info("Total trades: %s", performance.total_trades)
    logger.info("Win rate: %s", performance.win_rate)
    logger.info("Ending equity: %s", performance.ending_equity)
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "report-ledger":
        return _run_report_ledger(args)

    logger = logging.getLogger(__name__)
    if args.env_file and not Path(args.env_file).exists():
        logger.error("env-file does not exist: %s", args.env_file)
        return 2
    if args.config and not Path(args.config).exists():
        logger.error("config does not exist: %s", args.config)
        return 2
    try:
        settings = _load_settings(args)
    except (OSError, ValueError) as exc:
        logger.error(str(exc))
        return 3

    if args.command == "resolve":
        return _run_resolve(args, settings)
    if args.command == "simulate":
        return _run_simulate(args, settings)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
