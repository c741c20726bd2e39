"""
Exit rules: the closed set of ways a simulated position can be closed, and the
table that maps strategy codes onto them.

Each rule is a scan over the ``(trade_date, close)`` pairs strictly after the
entry date, returning the first qualifying exit or ``None`` when the position
stays open.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from common.errors import ExitRuleTableError

logger = logging.getLogger(__name__)

DEFAULT_HOLDING_DAYS = 3


class ExitRule(str, Enum):
    STOP_OR_TARGET = "STOP_OR_TARGET"
    STOP_ONLY = "STOP_ONLY"
    TIME_OR_STOP = "TIME_OR_STOP"
    # Strategy code missing from the table; scanned like STOP_ONLY.
    UNMAPPED = "UNMAPPED"


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TARGET = "TARGET"
    TIME = "TIME"
    END_OF_DATA = "END_OF_DATA"


MAPPABLE_RULES: tuple[ExitRule, ...] = (ExitRule.STOP_OR_TARGET, ExitRule.STOP_ONLY, ExitRule.TIME_OR_STOP)

DEFAULT_EXIT_RULE_TABLE: dict[str, ExitRule] = {
    "EMA_BREAKOUT": ExitRule.STOP_OR_TARGET,
    "ATR_BREAKOUT": ExitRule.STOP_OR_TARGET,
    "RANGE_BREAK_VOL": ExitRule.STOP_OR_TARGET,
    "BB_SQUEEZE": ExitRule.STOP_OR_TARGET,
    "NR4_INSIDE_BAR": ExitRule.STOP_OR_TARGET,
    "SMA_CROSSOVER": ExitRule.STOP_ONLY,
    "GAP_UP_MOMENTUM": ExitRule.TIME_OR_STOP,
}


def normalize_strategy_code(raw: Any) -> str:
    """EMA-breakout / 'ema breakout' / EMA_BREAKOUT -> EMA_BREAKOUT."""
    text = str(raw or "").strip().upper()
    return "_".join(part for part in text.replace("-", " ").replace("_", " ").split() if part)


def _parse_rule(raw: Any, code: str) -> ExitRule:
    name = normalize_strategy_code(raw)
    try:
        rule = ExitRule(name)
    except ValueError as exc:
        raise ExitRuleTableError(f"Unknown exit rule {raw!r} for strategy {code}") from exc
    if rule is ExitRule.UNMAPPED:
        raise ExitRuleTableError(f"Strategy {code} cannot be mapped to {ExitRule.UNMAPPED.value}")
    return rule


class ExitRuleTable:
    """Strategy code -> exit rule lookup. Rule names are themselves valid codes."""

    def __init__(self, mapping: Optional[Mapping[str, Any]] = None):
        source = DEFAULT_EXIT_RULE_TABLE if mapping is None else mapping
        self._rules: dict[str, ExitRule] = {}
        for code, rule in source.items():
            key = normalize_strategy_code(code)
            if not key:
                raise ExitRuleTableError("Strategy code must not be empty")
            self._rules[key] = _parse_rule(rule.value if isinstance(rule, ExitRule) else rule, key)

    def lookup(self, strategy_code: Any) -> ExitRule:
        key = normalize_strategy_code(strategy_code)
        rule = self._rules.get(key)
        if rule is not None:
            return rule
        try:
            named = ExitRule(key)
        except ValueError:
            return ExitRule.UNMAPPED
        return named if named in MAPPABLE_RULES else ExitRule.UNMAPPED

    def to_dict(self) -> dict[str, str]:
        return {code: rule.value for code, rule in sorted(self._rules.items())}

    def __contains__(self, strategy_code: object) -> bool:
        return normalize_strategy_code(strategy_code) in self._rules

    def __len__(self) -> int:
        return len(self._rules)


def load_exit_rule_table(path: str | Path, merge_defaults: bool = True) -> ExitRuleTable:
    """Load a JSON object of strategy code -> rule name, layered over the defaults unless told otherwise."""
    table_path = Path(path)
    try:
        payload = json.loads(table_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ExitRuleTableError(f"Exit rule table {table_path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ExitRuleTableError(f"Exit rule table {table_path} must be a JSON object")

    mapping: dict[str, Any] = dict(DEFAULT_EXIT_RULE_TABLE) if merge_defaults else {}
    mapping.update(payload)
    table = ExitRuleTable(mapping)
    logger.info("Loaded exit rule table from %s (%s codes)", table_path, len(table))
    return table


@dataclass(frozen=True)
class ExitDecision:
    exit_date: date
    exit_price: Decimal
    reason: ExitReason


def _stop_hit(close: Decimal, stop_loss: Decimal | None) -> bool:
    return stop_loss is not None and close <= stop_loss


def _scan_stop_or_target(
    path: Iterable[tuple[date, Decimal]],
    stop_loss: Decimal | None,
    target_price: Decimal | None,
) -> ExitDecision | None:
    last: tuple[date, Decimal] | None = None
    for trade_date, close in path:
        if _stop_hit(close, stop_loss):
            return ExitDecision(trade_date, close, ExitReason.STOP_LOSS)
        if target_price is not None and close >= target_price:
            return ExitDecision(trade_date, close, ExitReason.TARGET)
        last = (trade_date, close)

    if stop_loss is None and target_price is None and last is not None:
        return ExitDecision(last[0], last[1], ExitReason.END_OF_DATA)
    return None


def _scan_stop_only(path: Iterable[tuple[date, Decimal]], stop_loss: Decimal | None) -> ExitDecision | None:
    if stop_loss is None:
        return None
    for trade_date, close in path:
        if close <= stop_loss:
            return ExitDecision(trade_date, close, ExitReason.STOP_LOSS)
    return None


def _scan_time_or_stop(
    path: Iterable[tuple[date, Decimal]],
    stop_loss: Decimal | None,
    time_exit_on: date,
) -> ExitDecision | None:
    for trade_date, close in path:
        if _stop_hit(close, stop_loss):
            return ExitDecision(trade_date, close, ExitReason.STOP_LOSS)
        if trade_date >= time_exit_on:
            return ExitDecision(trade_date, close, ExitReason.TIME)
    return None


def find_exit(
    rule: ExitRule,
    path: Iterable[tuple[date, Decimal]],
    entry_date: date,
    stop_loss: Decimal | None = None,
    target_price: Decimal | None = None,
    holding_days: int = DEFAULT_HOLDING_DAYS,
) -> ExitDecision | None:
    """
    Apply one exit rule to the post-entry price path.

    ``path`` must yield ascending ``(trade_date, close)`` pairs dated after
    ``entry_date``. The holding period for TIME_OR_STOP is counted in calendar
    days from the entry date.
    """
    if rule is ExitRule.STOP_OR_TARGET:
        return _scan_stop_or_target(path, stop_loss, target_price)
    if rule is ExitRule.TIME_OR_STOP:
        return _scan_time_or_stop(path, stop_loss, entry_date + timedelta(days=holding_days))
    if rule in (ExitRule.STOP_ONLY, ExitRule.UNMAPPED):
        return _scan_stop_only(path, stop_loss)
    raise ValueError(f"Unsupported exit rule: {rule}")
