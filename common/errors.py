"""Exception types shared by the market-data and simulation packages."""

from __future__ import annotations


class ExternalSourceError(RuntimeError):
    """External candle feed errored, timed out, or returned an unreadable payload."""

    def __init__(self, source: str, symbol: str, message: str):
        super().__init__(f"{source} request failed for {symbol}: {message}")
        self.source = source
        self.symbol = symbol


class ComputationError(ArithmeticError):
    """A per-signal calculation could not be completed (e.g. zero entry price)."""


class ExitRuleTableError(ValueError):
    """Strategy-code to exit-rule mapping is malformed."""
