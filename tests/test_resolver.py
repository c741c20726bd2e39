"""Tests for the canonical-first candle resolver."""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from common.errors import ExternalSourceError
from common.settings import EngineSettings
from marketdata.circuit_breaker import FailureTracker
from marketdata.models import SOURCE_CANONICAL, SOURCE_EXTERNAL
from marketdata.resolver import MarketDataResolver, ScreeningCandles, merge_candles
from marketdata.sources import StaticCandleSource

START = date(2024, 1, 1)
END = date(2024, 1, 10)


def _external_returning(candles):
    external = MagicMock()
    external.get_daily_candles.return_value = candles
    return external


class TestMergeCandles:
    def test_primary_wins_on_collision(self, candle_factory):
        primary = candle_factory("AAPL", START, [10, 11, 12])
        secondary = candle_factory("AAPL", START, [99, 98, 97, 96], source=SOURCE_EXTERNAL)

        merged = merge_candles(primary, secondary)

        assert [candle.close for candle in merged] == [Decimal("10"), Decimal("11"), Decimal("12"), Decimal("96")]
        assert [candle.source for candle in merged[:3]] == [SOURCE_CANONICAL] * 3
        assert merged[3].source == SOURCE_EXTERNAL

    def test_secondary_outside_range_is_discarded(self, candle_factory):
        secondary = candle_factory("AAPL", date(2023, 12, 30), [1, 2, 3, 4], source=SOURCE_EXTERNAL)

        merged = merge_candles([], secondary, start=START, end=date(2024, 1, 1))

        assert [candle.trade_date for candle in merged] == [date(2024, 1, 1)]

    def test_result_is_ascending(self, candle_factory):
        primary = list(reversed(candle_factory("AAPL", START, [1, 2, 3])))

        merged = merge_candles(primary, [])

        assert [candle.trade_date for candle in merged] == sorted(candle.trade_date for candle in primary)


class TestResolveCandles:
    def test_full_canonical_coverage_skips_external(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, range(100, 110)))
        external = _external_returning([])
        resolver = MarketDataResolver(canonical, external=external)

        candles = resolver.resolve_candles("AAPL", START, END)

        assert len(candles) == 10
        external.get_daily_candles.assert_not_called()

    def test_gap_is_filled_from_external(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [100, 101, 102]))
        external = _external_returning(candle_factory("AAPL", date(2024, 1, 2), range(200, 209), source=SOURCE_EXTERNAL))
        resolver = MarketDataResolver(canonical, external=external)

        candles = resolver.resolve_candles("AAPL", START, END)

        external.get_daily_candles.assert_called_once_with("AAPL", date(2024, 1, 4), END)
        assert len(candles) == 10
        assert candles[2].close == Decimal("102")
        assert candles[2].source == SOURCE_CANONICAL
        assert candles[3].source == SOURCE_EXTERNAL

    def test_empty_canonical_requests_whole_range(self, candle_factory):
        canonical = StaticCandleSource()
        external = _external_returning(candle_factory("AAPL", START, [1, 2], source=SOURCE_EXTERNAL))
        resolver = MarketDataResolver(canonical, external=external)

        candles = resolver.resolve_candles("aapl", START, END)

        external.get_daily_candles.assert_called_once_with("AAPL", START, END)
        assert len(candles) == 2

    def test_external_failure_returns_canonical(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [100, 101]))
        external = MagicMock()
        external.get_daily_candles.side_effect = ExternalSourceError("YAHOO", "AAPL", "timed out")
        tracker = FailureTracker()
        resolver = MarketDataResolver(canonical, external=external, tracker=tracker)

        candles = resolver.resolve_candles("AAPL", START, END)

        assert len(candles) == 2
        assert tracker.snapshot("AAPL").consecutive_failures == 1

    def test_empty_external_counts_as_failure(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [100]))
        tracker = FailureTracker()
        resolver = MarketDataResolver(canonical, external=_external_returning([]), tracker=tracker)

        resolver.resolve_candles("AAPL", START, END)

        assert tracker.snapshot("AAPL").consecutive_failures == 1

    def test_success_resets_tracker(self, candle_factory):
        canonical = StaticCandleSource()
        tracker = FailureTracker()
        tracker.record_failure("AAPL")
        tracker.record_failure("AAPL")
        external = _external_returning(candle_factory("AAPL", START, [1], source=SOURCE_EXTERNAL))
        resolver = MarketDataResolver(canonical, external=external, tracker=tracker)

        resolver.resolve_candles("AAPL", START, END)

        assert tracker.snapshot("AAPL").consecutive_failures == 0

    def test_open_breaker_skips_external(self, candle_factory, clock):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [100]))
        tracker = FailureTracker(failure_threshold=3, clock=clock)
        external = _external_returning([])
        resolver = MarketDataResolver(canonical, external=external, tracker=tracker)

        for _ in range(3):
            resolver.resolve_candles("AAPL", START, END)
        assert external.get_daily_candles.call_count == 3

        candles = resolver.resolve_candles("AAPL", START, END)

        assert external.get_daily_candles.call_count == 3
        assert len(candles) == 1

    def test_canonical_error_is_treated_as_empty(self, candle_factory):
        canonical = MagicMock()
        canonical.get_daily_candles.side_effect = OSError("disk gone")
        external = _external_returning(candle_factory("AAPL", START, [5], source=SOURCE_EXTERNAL))
        resolver = MarketDataResolver(canonical, external=external)

        candles = resolver.resolve_candles("AAPL", START, END)

        assert [candle.close for candle in candles] == [Decimal("5")]

    def test_no_data_anywhere_is_empty(self):
        resolver = MarketDataResolver(StaticCandleSource(), external=_external_returning([]))

        assert resolver.resolve_candles("AAPL", START, END) == []

    def test_inverted_range_is_empty(self, candle_factory):
        external = _external_returning([])
        resolver = MarketDataResolver(StaticCandleSource(candle_factory("AAPL", START, [1])), external=external)

        assert resolver.resolve_candles("AAPL", END, START) == []
        external.get_daily_candles.assert_not_called()


class TestServingModes:
    def test_screening_flags_stale_data(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [1, 2, 3]))
        resolver = MarketDataResolver(canonical)

        result = resolver.resolve_for_screening("AAPL", START, END)

        assert isinstance(result, ScreeningCandles)
        assert result.stale is True
        assert result.latest_date == date(2024, 1, 3)
        assert len(result.candles) == 3

    def test_screening_fresh_data(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, range(10)))
        resolver = MarketDataResolver(canonical)

        assert resolver.resolve_for_screening("AAPL", START, END).stale is False

    def test_screening_check_can_be_disabled(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [1]))
        settings = EngineSettings(require_latest_data_for_screening=False)
        resolver = MarketDataResolver(canonical, settings=settings)

        assert resolver.resolve_for_screening("AAPL", START, END).stale is False

    def test_screening_empty_is_not_stale(self):
        resolver = MarketDataResolver(StaticCandleSource())

        result = resolver.resolve_for_screening("AAPL", START, END)

        assert result.candles == []
        assert result.stale is False
        assert result.latest_date is None

    def test_backtest_uses_canonical_only_by_default(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [1, 2]))
        external = _external_returning(candle_factory("AAPL", START, range(10), source=SOURCE_EXTERNAL))
        resolver = MarketDataResolver(canonical, external=external)

        candles = resolver.resolve_for_backtest("AAPL", START, END)

        assert len(candles) == 2
        external.get_daily_candles.assert_not_called()

    def test_backtest_fallback_when_allowed(self, candle_factory):
        canonical = StaticCandleSource(candle_factory("AAPL", START, [1, 2]))
        external = _external_returning(candle_factory("AAPL", START, range(10), source=SOURCE_EXTERNAL))
        settings = EngineSettings(allow_external_fallback_for_backtest=True)
        resolver = MarketDataResolver(canonical, external=external, settings=settings)

        candles = resolver.resolve_for_backtest("AAPL", START, END)

        assert len(candles) == 10
        assert candles[0].source == SOURCE_CANONICAL

    def test_unknown_mode(self):
        resolver = MarketDataResolver(StaticCandleSource())

        with pytest.raises(ValueError):
            resolver.resolve("AAPL", START, END, mode="live")


def test_resolve_many_keys_by_symbol(candle_factory):
    canonical = StaticCandleSource(
        candle_factory("AAPL", START, range(10)) + candle_factory("MSFT", START, range(5))
    )
    resolver = MarketDataResolver(canonical)

    results = resolver.resolve_many(["msft", "AAPL", "AAPL"], START, END, max_workers=2)

    assert list(results) == ["AAPL", "MSFT"]
    assert len(results["AAPL"]) == 10
    assert len(results["MSFT"]) == 5


def test_current_price_uses_latest_close(candle_factory):
    canonical = StaticCandleSource(candle_factory("AAPL", date(2024, 1, 5), [10, 11, 12]))
    resolver = MarketDataResolver(canonical)

    assert resolver.current_price("AAPL", as_of=date(2024, 1, 7)) == Decimal("12")


def test_current_price_without_data_raises():
    resolver = MarketDataResolver(StaticCandleSource())

    with pytest.raises(LookupError):
        resolver.current_price("AAPL", as_of=date(2024, 1, 7))


@pytest.mark.parametrize("symbol", ["", "   ", None, "BAD SYMBOL!"])
def test_invalid_symbol_resolves_to_empty(candle_factory, symbol):
    canonical = StaticCandleSource(candle_factory("AAPL", START, [1, 2]))
    external = _external_returning([])
    settings = EngineSettings(allow_external_fallback_for_backtest=False)
    resolver = MarketDataResolver(canonical, external=external, settings=settings)

    assert resolver.resolve_candles(symbol, START, END) == []
    assert resolver.resolve_for_backtest(symbol, START, END) == []
    assert resolver.resolve_for_screening(symbol, START, END).candles == []
    external.get_daily_candles.assert_not_called()


def test_resolve_many_skips_invalid_symbols(candle_factory):
    resolver = MarketDataResolver(StaticCandleSource(candle_factory("AAPL", START, [1])))

    assert list(resolver.resolve_many(["AAPL", ""], START, END)) == ["AAPL"]
