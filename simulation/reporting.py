"""Trade-ledger reporting: CSV I/O, pandas breakdowns, and report artifacts."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd

from .models import TRADE_COLUMNS, PerformanceSummary, SimulatedTrade, SimulationResult

logger = logging.getLogger(__name__)

REQUIRED_LEDGER_COLUMNS: tuple[str, ...] = (
    "signal_id",
    "symbol",
    "entry_date",
    "entry_price",
)

EQUITY_COLUMNS: tuple[str, ...] = ("date", "equity", "peak", "drawdown")
ISSUE_COLUMNS: tuple[str, ...] = ("signal_id", "symbol", "code", "message")


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def _safe_float(value: Any) -> Optional[float]:
    try:
        if pd.isna(value):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _profit_factor(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    wins = float(series[series > 0].sum())
    losses = float(series[series < 0].sum())
    if losses == 0:
        return None
    return float(wins / abs(losses))


@dataclass
class ReportConfig:
    """Run parameters recorded next to the report artifacts."""

    data_root: Optional[Path] = None
    report_dir: Optional[Path] = None
    source_csv: Optional[Path] = None
    start: Optional[date] = None
    end: Optional[date] = None
    symbols: list[str] = field(default_factory=list)
    starting_capital: Optional[Decimal] = None
    mode: str = "simulate"
    notes: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("data_root", "report_dir", "source_csv"):
            value = payload.get(key)
            if value is not None:
                payload[key] = str(value)
        for key in ("start", "end"):
            value = payload.get(key)
            payload[key] = value.isoformat() if value is not None else None
        if payload.get("starting_capital") is not None:
            payload["starting_capital"] = str(payload["starting_capital"])
        payload["symbols"] = sorted({str(item).upper() for item in (payload.get("symbols") or [])})
        return payload


def trades_to_frame(trades: Iterable[SimulatedTrade]) -> pd.DataFrame:
    """Tabulate trades; numeric columns become floats, dates become timestamps."""
    df = pd.DataFrame([trade.to_record() for trade in trades], columns=list(TRADE_COLUMNS))
    for col in ("entry_price", "exit_price", "pnl", "pnl_pct"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["quantity"] = pd.to_numeric(df["quantity"], errors="coerce")
    for col in ("entry_date", "exit_date"):
        df[col] = pd.to_datetime(df[col], errors="coerce")
    return df


def load_trades_csv(path: str | Path) -> list[SimulatedTrade]:
    """Read a trade ledger CSV (as written by write_simulation_artifacts, or hand-made)."""
    csv_path = Path(path)
    df = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
    missing = [col for col in REQUIRED_LEDGER_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required trade columns: {missing}")

    trades: list[SimulatedTrade] = []
    for position, row in enumerate(df.to_dict(orient="records")):
        try:
            trades.append(SimulatedTrade.from_record(row))
        except ValueError as exc:
            raise ValueError(f"Invalid trade row {position + 2} in {csv_path}: {exc}") from exc
    logger.info("Loaded %s trades from %s", len(trades), csv_path)
    return trades


def _with_outcome(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out["outcome"] = "OPEN"
    closed = out["pnl"].notna()
    out.loc[closed & (out["pnl"] > 0), "outcome"] = "WIN"
    out.loc[closed & (out["pnl"] < 0), "outcome"] = "LOSS"
    out.loc[closed & (out["pnl"] == 0), "outcome"] = "FLAT"
    out["month"] = out["exit_date"].dt.strftime("%Y-%m")
    return out


def _group_trade_metrics(df: pd.DataFrame, group_col: str) -> list[dict[str, Any]]:
    if df.empty or group_col not in df.columns:
        return []

    rows: list[dict[str, Any]] = []
    for key, grp in df.groupby(group_col, dropna=False):
        closed = grp[grp["outcome"].isin(["WIN", "LOSS", "FLAT"])]
        wins = int((closed["outcome"] == "WIN").sum())
        losses = int((closed["outcome"] == "LOSS").sum())
        closed_count = int(len(closed))
        rows.append(
            {
                group_col: str(key),
                "total_trades": int(len(grp)),
                "wins": wins,
                "losses": losses,
                "win_rate": (wins / closed_count) if closed_count > 0 else None,
                "total_pnl": _safe_float(closed["pnl"].sum()) if closed_count > 0 else 0.0,
                "avg_pnl_pct": _safe_float(closed["pnl_pct"].mean()) if closed_count > 0 else None,
                "profit_factor": _profit_factor(closed["pnl"]) if closed_count > 0 else None,
            }
        )

    rows.sort(key=lambda item: (item.get("total_trades", 0), str(item.get(group_col))), reverse=True)
    return rows


def _monthly_metrics(df: pd.DataFrame) -> list[dict[str, Any]]:
    if df.empty:
        return []

    rows: list[dict[str, Any]] = []
    for month, grp in df.dropna(subset=["month"]).groupby("month"):
        closed = grp[grp["outcome"].isin(["WIN", "LOSS", "FLAT"])]
        rows.append(
            {
                "month": month,
                "total_trades": int(len(grp)),
                "wins": int((closed["outcome"] == "WIN").sum()),
                "losses": int((closed["outcome"] == "LOSS").sum()),
                "total_pnl": _safe_float(closed["pnl"].sum()) if not closed.empty else 0.0,
            }
        )

    rows.sort(key=lambda row: row["month"])
    return rows


def build_report_summary(
    trades: list[SimulatedTrade],
    performance: PerformanceSummary,
    config: Optional[ReportConfig] = None,
    result: Optional[SimulationResult] = None,
    data_manifest: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Combine the performance summary with pandas breakdowns of the ledger."""
    df = _with_outcome(trades_to_frame(trades))
    return {
        "run_config": (config or ReportConfig()).to_dict(),
        "performance": performance.to_dict(include_curve=False),
        "simulation": result.to_dict() if result is not None else None,
        "breakdowns": {
            "by_symbol": _group_trade_metrics(df, "symbol"),
            "by_strategy": _group_trade_metrics(df, "strategy_code"),
            "by_exit_reason": _group_trade_metrics(df, "exit_reason"),
            "by_month": _monthly_metrics(df),
        },
        "data_manifest": data_manifest or {},
    }


def _md_table(rows: list[dict[str, Any]], columns: list[str]) -> str:
    if not rows:
        return "_No rows_\n"
    header = "| " + " | ".join(columns) + " |"
    sep = "| " + " | ".join(["---"] * len(columns)) + " |"
    body: list[str] = []
    for row in rows:
        values: list[str] = []
        for col in columns:
            value = row.get(col)
            if isinstance(value, float):
                values.append(f"{value:.6g}")
            elif value is None:
                values.append("")
            else:
                values.append(str(value))
        body.append("| " + " | ".join(values) + " |")
    return "\n".join([header, sep, *body]) + "\n"


def _write_markdown_report(report_path: Path, summary: dict[str, Any]) -> None:
    run_cfg = summary.get("run_config", {})
    performance = summary.get("performance", {})
    simulation = summary.get("simulation") or {}

    sections: list[str] = []
    sections.append("# Trade Simulation Report")
    sections.append("")
    sections.append("## Scope")
    sections.append("")
    sections.append(f"- Mode: `{run_cfg.get('mode')}`")
    sections.append(f"- Source: `{run_cfg.get('source_csv')}`")
    sections.append(f"- Data root: `{run_cfg.get('data_root')}`")
    sections.append(f"- Start: `{run_cfg.get('start')}`")
    sections.append(f"- End: `{run_cfg.get('end')}`")
    sections.append("")
    sections.append("## Summary Metrics")
    sections.append("")
    sections.append(_md_table([
        {"metric": "Starting capital", "value": performance.get("starting_capital")},
        {"metric": "Ending equity", "value": performance.get("ending_equity")},
        {"metric": "Total trades", "value": performance.get("total_trades")},
        {"metric": "Wins", "value": performance.get("wins")},
        {"metric": "Losses", "value": performance.get("losses")},
        {"metric": "Win rate", "value": performance.get("win_rate")},
        {"metric": "Total P&L", "value": performance.get("total_pnl")},
        {"metric": "Average win", "value": performance.get("avg_win")},
        {"metric": "Average loss", "value": performance.get("avg_loss")},
        {"metric": "Profit factor", "value": performance.get("profit_factor")},
        {"metric": "Average return", "value": performance.get("avg_return_pct")},
        {"metric": "Max drawdown", "value": performance.get("max_drawdown")},
    ], ["metric", "value"]).rstrip())
    sections.append("")

    if simulation:
        sections.append("## Signals")
        sections.append("")
        issue_rows = [{"code": code, "count": count} for code, count in sorted(simulation.get("issue_counts", {}).items())]
        sections.append(f"- Signals: {simulation.get('signal_count')}")
        sections.append(f"- Trades: {simulation.get('trade_count')}")
        sections.append("")
        sections.append(_md_table(issue_rows, ["code", "count"]).rstrip())
        sections.append("")
        warnings = simulation.get("warnings") or []
        if warnings:
            sections.append("### Warnings")
            sections.append("")
            sections.extend(f"- {item}" for item in warnings)
            sections.append("")

    sections.append("## Breakdowns")
    sections.append("")
    for title, key, cols in [
        ("By Symbol", "by_symbol", ["symbol", "total_trades", "wins", "losses", "win_rate", "total_pnl", "profit_factor"]),
        ("By Strategy", "by_strategy", ["strategy_code", "total_trades", "wins", "losses", "win_rate", "total_pnl", "profit_factor"]),
        ("By Exit Reason", "by_exit_reason", ["exit_reason", "total_trades", "wins", "losses", "total_pnl", "avg_pnl_pct"]),
        ("By Month", "by_month", ["month", "total_trades", "wins", "losses", "total_pnl"]),
    ]:
        sections.append(f"### {title}")
        sections.append("")
        sections.append(_md_table(summary.get("breakdowns", {}).get(key, []), cols).rstrip())
        sections.append("")

    report_path.write_text("\n".join(sections), encoding="utf-8")


def write_simulation_artifacts(
    trades: list[SimulatedTrade],
    performance: PerformanceSummary,
    report_dir: str | Path,
    config: Optional[ReportConfig] = None,
    result: Optional[SimulationResult] = None,
    data_manifest: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Write trades, equity curve, issues, summary and markdown report."""
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    summary = build_report_summary(trades, performance, config=config, result=result, data_manifest=data_manifest)

    trades_path = out_dir / "trades.csv"
    equity_path = out_dir / "equity_curve.csv"
    issues_path = out_dir / "issues.csv"
    summary_path = out_dir / "summary.json"
    report_path = out_dir / "report.md"

    pd.DataFrame([trade.to_record() for trade in trades], columns=list(TRADE_COLUMNS)).to_csv(trades_path, index=False)
    pd.DataFrame([point.to_record() for point in performance.equity_curve], columns=list(EQUITY_COLUMNS)).to_csv(
        equity_path, index=False
    )
    issues = result.issues if result is not None else []
    pd.DataFrame([issue.to_record() for issue in issues], columns=list(ISSUE_COLUMNS)).to_csv(issues_path, index=False)
    summary_path.write_text(json.dumps(summary, indent=2, default=_json_default), encoding="utf-8")
    _write_markdown_report(report_path, summary)
    logger.info("Wrote simulation artifacts to %s", out_dir)

    return {
        "summary": summary,
        "paths": {
            "report_dir": str(out_dir),
            "trades_csv": str(trades_path),
            "equity_curve_csv": str(equity_path),
            "issues_csv": str(issues_path),
            "summary_json": str(summary_path),
            "report_md": str(report_path),
        },
    }
