"""Tests for exit-rule lookup and the per-rule exit scans."""

import json
from datetime import date, timedelta
from decimal import Decimal

import pytest

from common.errors import ExitRuleTableError
from simulation.exit_rules import (
    DEFAULT_EXIT_RULE_TABLE,
    ExitReason,
    ExitRule,
    ExitRuleTable,
    find_exit,
    load_exit_rule_table,
    normalize_strategy_code,
)

ENTRY = date(2024, 1, 1)


def _path(closes, first=ENTRY + timedelta(days=1)):
    return [(first + timedelta(days=offset), Decimal(str(close))) for offset, close in enumerate(closes)]


class TestExitRuleTable:
    def test_default_mapping(self):
        table = ExitRuleTable()

        assert table.lookup("EMA_BREAKOUT") is ExitRule.STOP_OR_TARGET
        assert table.lookup("SMA_CROSSOVER") is ExitRule.STOP_ONLY
        assert table.lookup("GAP_UP_MOMENTUM") is ExitRule.TIME_OR_STOP

    def test_several_codes_share_stop_or_target(self):
        shared = [code for code, rule in DEFAULT_EXIT_RULE_TABLE.items() if rule is ExitRule.STOP_OR_TARGET]

        assert len(shared) > 1

    def test_rule_names_are_valid_codes(self):
        table = ExitRuleTable()

        assert table.lookup("stop-or-target") is ExitRule.STOP_OR_TARGET
        assert table.lookup("Time or Stop") is ExitRule.TIME_OR_STOP
        assert table.lookup("stop_only") is ExitRule.STOP_ONLY

    def test_unknown_code_is_unmapped(self):
        table = ExitRuleTable()

        assert table.lookup("MOON_SHOT") is ExitRule.UNMAPPED
        assert table.lookup("unmapped") is ExitRule.UNMAPPED
        assert table.lookup("") is ExitRule.UNMAPPED

    def test_custom_mapping_replaces_defaults(self):
        table = ExitRuleTable({"moon-shot": "time-or-stop"})

        assert table.lookup("MOON_SHOT") is ExitRule.TIME_OR_STOP
        assert table.lookup("EMA_BREAKOUT") is ExitRule.UNMAPPED

    def test_invalid_rule_name(self):
        with pytest.raises(ExitRuleTableError):
            ExitRuleTable({"X": "sometimes"})

    def test_cannot_map_to_unmapped(self):
        with pytest.raises(ExitRuleTableError):
            ExitRuleTable({"X": "UNMAPPED"})

    def test_cannot_map_to_unmapped_enum(self):
        with pytest.raises(ExitRuleTableError):
            ExitRuleTable({"X": ExitRule.UNMAPPED})

    def test_enum_values_are_accepted(self):
        assert ExitRuleTable({"X": ExitRule.STOP_ONLY}).lookup("x") is ExitRule.STOP_ONLY

    def test_load_from_json_merges_defaults(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"RSI_MEAN_REVERSION": "stop_only", "EMA_BREAKOUT": "TIME_OR_STOP"}), encoding="utf-8")

        table = load_exit_rule_table(path)

        assert table.lookup("rsi-mean-reversion") is ExitRule.STOP_ONLY
        assert table.lookup("EMA_BREAKOUT") is ExitRule.TIME_OR_STOP
        assert table.lookup("SMA_CROSSOVER") is ExitRule.STOP_ONLY

    def test_load_rejects_non_object(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("[1, 2]", encoding="utf-8")

        with pytest.raises(ExitRuleTableError):
            load_exit_rule_table(path)


def test_normalize_strategy_code():
    assert normalize_strategy_code(" gap-up momentum ") == "GAP_UP_MOMENTUM"
    assert normalize_strategy_code("EMA__BREAKOUT") == "EMA_BREAKOUT"


class TestStopOrTarget:
    def test_stop_hit(self):
        decision = find_exit(ExitRule.STOP_OR_TARGET, _path([98, 96, 94]), ENTRY, Decimal("95"), Decimal("110"))

        assert decision.exit_price == Decimal("94")
        assert decision.exit_date == ENTRY + timedelta(days=3)
        assert decision.reason is ExitReason.STOP_LOSS

    def test_target_hit(self):
        decision = find_exit(ExitRule.STOP_OR_TARGET, _path([101, 105, 111]), ENTRY, Decimal("95"), Decimal("110"))

        assert decision.exit_price == Decimal("111")
        assert decision.reason is ExitReason.TARGET

    def test_stop_checked_before_target(self):
        # A degenerate signal where one close satisfies both bounds.
        decision = find_exit(ExitRule.STOP_OR_TARGET, _path([100]), ENTRY, Decimal("100"), Decimal("100"))

        assert decision.reason is ExitReason.STOP_LOSS

    def test_no_bounds_exits_on_last_candle(self):
        decision = find_exit(ExitRule.STOP_OR_TARGET, _path([101, 102, 103]), ENTRY)

        assert decision.exit_price == Decimal("103")
        assert decision.reason is ExitReason.END_OF_DATA

    def test_no_bounds_and_no_candles(self):
        assert find_exit(ExitRule.STOP_OR_TARGET, [], ENTRY) is None

    def test_never_triggered(self):
        assert find_exit(ExitRule.STOP_OR_TARGET, _path([100, 101]), ENTRY, Decimal("95"), Decimal("110")) is None


class TestStopOnly:
    def test_stop_hit(self):
        decision = find_exit(ExitRule.STOP_ONLY, _path([99, 94, 90]), ENTRY, Decimal("95"))

        assert decision.exit_price == Decimal("94")

    def test_target_is_ignored(self):
        assert find_exit(ExitRule.STOP_ONLY, _path([120, 130]), ENTRY, Decimal("95"), Decimal("110")) is None

    def test_no_stop_never_exits(self):
        assert find_exit(ExitRule.STOP_ONLY, _path([1, 2, 3]), ENTRY) is None

    def test_unmapped_behaves_like_stop_only(self):
        path = _path([99, 94, 120])

        assert find_exit(ExitRule.UNMAPPED, path, ENTRY, Decimal("95"), Decimal("110")) == find_exit(
            ExitRule.STOP_ONLY, path, ENTRY, Decimal("95"), Decimal("110")
        )


class TestTimeOrStop:
    def test_time_exit_on_holding_boundary(self):
        decision = find_exit(ExitRule.TIME_OR_STOP, _path([51, 52, 53, 54]), ENTRY, Decimal("45"), holding_days=3)

        assert decision.exit_date == ENTRY + timedelta(days=3)
        assert decision.exit_price == Decimal("53")
        assert decision.reason is ExitReason.TIME

    def test_time_exit_after_gap(self):
        # No candle exactly on the boundary: the first one after it closes the trade.
        path = [(ENTRY + timedelta(days=1), Decimal("51")), (ENTRY + timedelta(days=5), Decimal("54"))]

        decision = find_exit(ExitRule.TIME_OR_STOP, path, ENTRY, Decimal("45"), holding_days=3)

        assert decision.exit_date == ENTRY + timedelta(days=5)
        assert decision.exit_price == Decimal("54")

    def test_stop_has_priority_on_boundary(self):
        decision = find_exit(ExitRule.TIME_OR_STOP, _path([51, 52, 44]), ENTRY, Decimal("45"), holding_days=3)

        assert decision.reason is ExitReason.STOP_LOSS
        assert decision.exit_price == Decimal("44")

    def test_data_ends_before_boundary(self):
        assert find_exit(ExitRule.TIME_OR_STOP, _path([51, 52]), ENTRY, Decimal("45"), holding_days=3) is None


def test_path_can_be_a_generator():
    decision = find_exit(ExitRule.STOP_ONLY, (item for item in _path([99, 90])), ENTRY, Decimal("95"))

    assert decision.exit_price == Decimal("90")
