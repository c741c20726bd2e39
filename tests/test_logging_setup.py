"""Tests for logging setup and the data-source log context."""

import logging

from common.logging_setup import ContextFilter, current_context, log_context, setup_logging, teardown_logging


def _record():
    return logging.LogRecord("test", logging.INFO, __file__, 1, "message", None, None)


def test_context_is_bound_and_restored():
    assert current_context() == {"data_source": "-", "symbol": "-"}

    with log_context(data_source="COMPOSITE", symbol="AAPL"):
        with log_context(data_source="DATABASE"):
            assert current_context() == {"data_source": "DATABASE", "symbol": "AAPL"}
        assert current_context() == {"data_source": "COMPOSITE", "symbol": "AAPL"}

    assert current_context() == {"data_source": "-", "symbol": "-"}


def test_filter_stamps_records():
    record = _record()

    with log_context(data_source="YAHOO", symbol="RELIANCE"):
        assert ContextFilter().filter(record) is True

    assert record.data_source == "YAHOO"
    assert record.symbol == "RELIANCE"


def test_setup_logging_writes_context_to_file(tmp_path):
    root = setup_logging("DEBUG", logs_dir=tmp_path, console_output=False, log_file_name="test.log")
    try:
        with log_context(data_source="DATABASE", symbol="MSFT"):
            logging.getLogger("marketdata.store").info("loaded series")
        for handler in root.handlers:
            handler.flush()
    finally:
        teardown_logging(root)

    text = (tmp_path / "test.log").read_text(encoding="utf-8")
    assert "DATABASE MSFT | loaded series" in text
    assert root.handlers == []
