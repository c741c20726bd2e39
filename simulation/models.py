"""Signal, trade and performance models for trade simulation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from common.market_metadata import normalize_symbol, parse_trade_date, to_decimal, to_optional_decimal

from .exit_rules import ExitReason, ExitRule

REQUIRED_SIGNAL_COLUMNS: tuple[str, ...] = (
    "signal_id",
    "symbol",
    "signal_date",
    "entry_price",
    "quantity",
    "strategy_code",
)

OPTIONAL_SIGNAL_COLUMNS: tuple[str, ...] = (
    "side",
    "stop_loss",
    "target_price",
)

TRADE_COLUMNS: tuple[str, ...] = (
    "signal_id",
    "symbol",
    "strategy_code",
    "entry_date",
    "entry_price",
    "exit_date",
    "exit_price",
    "quantity",
    "pnl",
    "pnl_pct",
    "exit_reason",
    "exit_rule",
)

ISSUE_NO_ENTRY_CANDLE = "NO_ENTRY_CANDLE"
ISSUE_NO_EXIT = "NO_EXIT"
ISSUE_COMPUTATION_ERROR = "COMPUTATION_ERROR"
ISSUE_UNSUPPORTED_SIDE = "UNSUPPORTED_SIDE"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, raw: Any) -> "Side":
        text = str(raw or "").strip().upper()
        if text in {"BUY", "LONG", ""}:
            return cls.BUY
        if text in {"SELL", "SHORT"}:
            return cls.SELL
        raise ValueError(f"Unsupported side value: {raw}")


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _require_text(row: Mapping[str, Any], field_name: str) -> str:
    value = str(row.get(field_name) or "").strip()
    if not value:
        raise ValueError(f"{field_name} is required")
    return value


def _parse_quantity(raw: Any) -> int:
    try:
        quantity = Decimal(str(raw).strip())
    except ArithmeticError as exc:
        raise ValueError("quantity contains invalid numbers") from exc
    if not quantity.is_finite() or quantity != quantity.to_integral_value() or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {raw}")
    return int(quantity)


@dataclass(frozen=True)
class Signal:
    """Validated trade entry proposal produced upstream."""

    signal_id: str
    symbol: str
    signal_date: date
    entry_price: Decimal
    quantity: int
    strategy_code: str
    side: Side = Side.BUY
    stop_loss: Decimal | None = None
    target_price: Decimal | None = None

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive for signal {self.signal_id}")
        if self.entry_price < 0:
            raise ValueError(f"entry_price must be non-negative for signal {self.signal_id}")

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Signal":
        signal_id = _require_text(row, "signal_id")
        return cls(
            signal_id=signal_id,
            symbol=normalize_symbol(_require_text(row, "symbol")),
            signal_date=parse_trade_date(row.get("signal_date"), "signal_date"),
            entry_price=to_decimal(row.get("entry_price"), "entry_price"),
            quantity=_parse_quantity(_require_text(row, "quantity")),
            strategy_code=_require_text(row, "strategy_code"),
            side=Side.parse(row.get("side")),
            stop_loss=to_optional_decimal(row.get("stop_loss"), "stop_loss"),
            target_price=to_optional_decimal(row.get("target_price"), "target_price"),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "signal_date": self.signal_date.isoformat(),
            "entry_price": str(self.entry_price),
            "stop_loss": _text(self.stop_loss),
            "target_price": _text(self.target_price),
            "quantity": self.quantity,
            "strategy_code": self.strategy_code,
        }


@dataclass(frozen=True)
class SimulatedTrade:
    """Closed simulated position. pnl/pnl_pct are None only for externally loaded ledgers."""

    signal_id: str
    symbol: str
    strategy_code: str
    entry_date: date
    entry_price: Decimal
    exit_date: date | None
    exit_price: Decimal | None
    quantity: int
    pnl: Decimal | None
    pnl_pct: Decimal | None
    exit_reason: ExitReason | None = None
    exit_rule: ExitRule | None = None

    def __post_init__(self) -> None:
        if self.exit_date is not None and self.exit_date <= self.entry_date:
            raise ValueError(
                f"exit_date {self.exit_date} must be after entry_date {self.entry_date} for trade {self.signal_id}"
            )

    def to_record(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "symbol": self.symbol,
            "strategy_code": self.strategy_code,
            "entry_date": _iso(self.entry_date),
            "entry_price": _text(self.entry_price),
            "exit_date": _iso(self.exit_date),
            "exit_price": _text(self.exit_price),
            "quantity": self.quantity,
            "pnl": _text(self.pnl),
            "pnl_pct": _text(self.pnl_pct),
            "exit_reason": self.exit_reason.value if self.exit_reason is not None else None,
            "exit_rule": self.exit_rule.value if self.exit_rule is not None else None,
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "SimulatedTrade":
        exit_raw = str(row.get("exit_date") or "").strip()
        reason_raw = str(row.get("exit_reason") or "").strip().upper()
        rule_raw = str(row.get("exit_rule") or "").strip().upper()
        return cls(
            signal_id=_require_text(row, "signal_id"),
            symbol=normalize_symbol(_require_text(row, "symbol")),
            strategy_code=str(row.get("strategy_code") or "").strip() or "UNKNOWN",
            entry_date=parse_trade_date(row.get("entry_date"), "entry_date"),
            entry_price=to_decimal(row.get("entry_price"), "entry_price"),
            exit_date=parse_trade_date(exit_raw, "exit_date") if exit_raw else None,
            exit_price=to_optional_decimal(row.get("exit_price"), "exit_price"),
            quantity=_parse_quantity(row.get("quantity") or "1"),
            pnl=to_optional_decimal(row.get("pnl"), "pnl"),
            pnl_pct=to_optional_decimal(row.get("pnl_pct"), "pnl_pct"),
            exit_reason=ExitReason(reason_raw) if reason_raw else None,
            exit_rule=ExitRule(rule_raw) if rule_raw else None,
        )


@dataclass(frozen=True)
class SignalIssue:
    """Per-signal reason a trade was not created."""

    signal_id: str
    symbol: str
    code: str
    message: str

    def to_record(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "symbol": self.symbol,
            "code": self.code,
            "message": self.message,
        }


@dataclass(frozen=True)
class EquityPoint:
    date: date
    equity: Decimal
    peak: Decimal
    drawdown: Decimal

    def to_record(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "equity": str(self.equity),
            "peak": str(self.peak),
            "drawdown": str(self.drawdown),
        }


@dataclass(frozen=True)
class PerformanceSummary:
    """Aggregate performance of a trade set; derived, never persisted."""

    starting_capital: Decimal
    total_trades: int
    win_rate: Decimal
    total_pnl: Decimal
    max_drawdown: Decimal
    equity_curve: tuple[EquityPoint, ...] = ()
    wins: int = 0
    losses: int = 0
    avg_win: Decimal | None = None
    avg_loss: Decimal | None = None
    profit_factor: Decimal | None = None
    avg_return_pct: Decimal | None = None
    ending_equity: Decimal | None = None

    def to_dict(self, include_curve: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "starting_capital": str(self.starting_capital),
            "total_trades": self.total_trades,
            "win_rate": str(self.win_rate),
            "total_pnl": str(self.total_pnl),
            "max_drawdown": str(self.max_drawdown),
            "wins": self.wins,
            "losses": self.losses,
            "avg_win": _text(self.avg_win),
            "avg_loss": _text(self.avg_loss),
            "profit_factor": _text(self.profit_factor),
            "avg_return_pct": _text(self.avg_return_pct),
            "ending_equity": _text(self.ending_equity),
        }
        if include_curve:
            payload["equity_curve"] = [point.to_record() for point in self.equity_curve]
        return payload


@dataclass
class SimulationResult:
    """Outcome of one simulation batch."""

    trades: list[SimulatedTrade] = field(default_factory=list)
    issues: list[SignalIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    signal_count: int = 0

    def issue_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for issue in self.issues:
            counts[issue.code] = counts.get(issue.code, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal_count": self.signal_count,
            "trade_count": len(self.trades),
            "issue_counts": self.issue_counts(),
            "warnings": list(self.warnings),
        }
