"""Tests for the CSV-backed canonical candle store."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from marketdata.store import CandleStore, write_candles_csv


def _write_csv(root, symbol, lines):
    folder = root / symbol
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / f"candles_{symbol}_D.csv"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def data_root(tmp_path):
    _write_csv(
        tmp_path,
        "AAPL",
        [
            "date,open,high,low,close,volume",
            "2024-01-03,12,13,11,12.5,300",
            "2024-01-01,10,11,9,10.5,100",
            "2024-01-02,11,12,10,11.5,200",
            "2024-01-02,11,12,10,11.75,250",
        ],
    )
    _write_csv(
        tmp_path,
        "RELIANCE",
        [
            "date,open,high,low,close,volume",
            "2024-01-01,2500,2510,2490,2505,10",
        ],
    )
    return tmp_path


def test_range_is_inclusive_and_sorted(data_root):
    store = CandleStore(data_root)

    candles = store.get_daily_candles("AAPL", date(2024, 1, 1), date(2024, 1, 2))

    assert [candle.trade_date for candle in candles] == [date(2024, 1, 1), date(2024, 1, 2)]
    assert candles[0].close == Decimal("10.5")


def test_duplicate_dates_keep_last_row(data_root):
    store = CandleStore(data_root)

    candles = store.get_daily_candles("AAPL", date(2024, 1, 2), date(2024, 1, 2))

    assert len(candles) == 1
    assert candles[0].close == Decimal("11.75")
    assert candles[0].volume == 250


def test_unknown_symbol_is_empty(data_root):
    store = CandleStore(data_root)

    assert store.get_daily_candles("MSFT", date(2024, 1, 1), date(2024, 1, 31)) == []


def test_symbol_input_is_normalized(data_root):
    store = CandleStore(data_root)

    candles = store.get_daily_candles("reliance.ns", date(2024, 1, 1), date(2024, 1, 1))

    assert len(candles) == 1
    assert candles[0].symbol == "RELIANCE"


def test_missing_columns_raise(tmp_path):
    _write_csv(tmp_path, "BAD", ["date,open,close", "2024-01-01,1,1"])
    store = CandleStore(tmp_path)

    with pytest.raises(ValueError, match="missing columns"):
        store.get_daily_candles("BAD", date(2024, 1, 1), date(2024, 1, 2))


def test_invalid_number_raises(tmp_path):
    _write_csv(tmp_path, "BAD", ["date,open,high,low,close,volume", "2024-01-01,1,1,1,abc,1"])
    store = CandleStore(tmp_path)

    with pytest.raises(ValueError, match="row 2"):
        store.get_daily_candles("BAD", date(2024, 1, 1), date(2024, 1, 2))


def test_series_is_cached(data_root):
    store = CandleStore(data_root)
    store.get_daily_candles("AAPL", date(2024, 1, 1), date(2024, 1, 3))

    (data_root / "AAPL" / "candles_AAPL_D.csv").unlink()

    assert len(store.get_daily_candles("AAPL", date(2024, 1, 1), date(2024, 1, 3))) == 3

    store.evict("AAPL")
    assert store.get_daily_candles("AAPL", date(2024, 1, 1), date(2024, 1, 3)) == []


def test_lru_bound(data_root):
    store = CandleStore(data_root, max_series=1)
    store.get_daily_candles("AAPL", date(2024, 1, 1), date(2024, 1, 3))
    store.get_daily_candles("RELIANCE", date(2024, 1, 1), date(2024, 1, 3))

    assert list(store._series) == ["RELIANCE"]


def test_concurrent_reads_share_one_series(data_root):
    store = CandleStore(data_root)
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(store.get_daily_candles("AAPL", date(2024, 1, 1), date(2024, 1, 3)))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(len(result) == 3 for result in results)
    assert len(store._series) == 1


def test_list_symbols_and_manifest(data_root):
    store = CandleStore(data_root)

    assert store.list_symbols() == ["AAPL", "RELIANCE"]

    manifest = store.build_manifest(["AAPL", "MSFT"])
    assert manifest["symbol_count"] == 2
    assert manifest["valid_file_count"] == 1
    assert manifest["rows_total"] == 3
    assert manifest["files"]["AAPL"]["first_date"] == "2024-01-01"
    assert manifest["files"]["AAPL"]["last_date"] == "2024-01-03"
    assert manifest["files"]["MSFT"]["error"] == "file_missing"


def test_write_then_read_layout(tmp_path, candle_factory):
    candles = candle_factory("MSFT", date(2024, 2, 1), [1, 2, 3])
    write_candles_csv(tmp_path / "MSFT" / "candles_MSFT_D.csv", candles)

    store = CandleStore(tmp_path)

    assert [candle.close for candle in store.get_daily_candles("MSFT", date(2024, 2, 1), date(2024, 2, 3))] == [
        Decimal("1"),
        Decimal("2"),
        Decimal("3"),
    ]
