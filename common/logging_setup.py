"""Centralized logging configuration with rotation and data-source context."""
import contextvars
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

_DATA_SOURCE: contextvars.ContextVar[str] = contextvars.ContextVar("data_source", default="-")
_SYMBOL: contextvars.ContextVar[str] = contextvars.ContextVar("symbol", default="-")

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(data_source)s %(symbol)s | %(message)s'


class ContextFilter(logging.Filter):
    """Stamp every record with the active data source and symbol."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.data_source = _DATA_SOURCE.get()
        record.symbol = _SYMBOL.get()
        return True


@contextmanager
def log_context(data_source: Optional[str] = None, symbol: Optional[str] = None) -> Iterator[None]:
    """
    Tag log records emitted inside the block with a data source and/or symbol.

    Context is held in contextvars, so it is local to the current thread
    (and to tasks copied from it) and is restored on exit.
    """
    tokens = []
    if data_source is not None:
        tokens.append((_DATA_SOURCE, _DATA_SOURCE.set(data_source)))
    if symbol is not None:
        tokens.append((_SYMBOL, _SYMBOL.set(symbol)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Flush, detach, and close all handlers from the provided logger."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        try:
            handler.flush()
            handler.close()
        except OSError:
            # Best-effort cleanup.
            pass


def setup_logging(
    log_level: str = 'INFO',
    logs_dir: Optional[Path] = None,
    console_output: bool = True,
    log_file_name: str = 'engine.log',
) -> logging.Logger:
    """
    Set up centralized logging with rotation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logs_dir: Directory for log files. If None, uses 'logs/' in current directory.
        console_output: Whether to output logs to console
        log_file_name: File name of the rotating log inside logs_dir

    Returns:
        Configured root logger
    """
    if logs_dir is None:
        logs_dir = Path.cwd() / 'logs'
    logs_dir = Path(logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    teardown_logging(logger)

    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    context_filter = ContextFilter()

    log_file = logs_dir / log_file_name
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=3,
        encoding='utf-8',
        delay=True,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(context_filter)
    logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(context_filter)
        logger.addHandler(console_handler)

    logger.info(f"Logging initialized at {log_level} level")
    logger.info(f"Log file: {log_file}")

    return logger


def current_context() -> dict[str, str]:
    """Return the data source and symbol currently bound by log_context."""
    return {"data_source": _DATA_SOURCE.get(), "symbol": _SYMBOL.get()}
