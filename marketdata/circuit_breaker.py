"""Per-symbol failure tracking for the external candle feed."""

from __future__ import annotations

import logging
import threading
import time
import zlib
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 60.0
DEFAULT_SHARDS = 16


@dataclass(frozen=True)
class BreakerState:
    """Snapshot of one symbol's breaker."""

    consecutive_failures: int = 0
    open: bool = False
    last_failure_at: float | None = None
    probe_started_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "consecutive_failures": self.consecutive_failures,
            "open": self.open,
            "last_failure_at": self.last_failure_at,
            "probe_started_at": self.probe_started_at,
        }


_CLOSED = BreakerState()


class _Shard:
    __slots__ = ("lock", "states")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.states: dict[str, BreakerState] = {}


class FailureTracker:
    """
    Circuit breaker keyed by symbol.

    The breaker opens after ``failure_threshold`` consecutive failures. Once
    ``cooldown_seconds`` have passed since the last failure, exactly one caller
    is told the circuit is closed (the probe); everybody else keeps seeing it
    open until the probe reports back. An unreported probe is re-granted after
    another cooldown.

    State lives in a fixed number of shards, each guarded by its own lock, so
    updates for one symbol are linearizable and unrelated symbols rarely contend.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        shards: int = DEFAULT_SHARDS,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        self.failure_threshold = int(failure_threshold)
        self.cooldown_seconds = float(cooldown_seconds)
        self._clock = clock
        self._shards = tuple(_Shard() for _ in range(max(1, int(shards))))

    def _shard(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    @staticmethod
    def _key(symbol: str) -> str:
        return str(symbol).strip().upper()

    def is_open(self, symbol: str) -> bool:
        """True while calls to the external feed should be skipped for symbol."""
        key = self._key(symbol)
        shard = self._shard(key)
        with shard.lock:
            state = shard.states.get(key, _CLOSED)
            if not state.open:
                return False

            now = self._clock()
            if state.probe_started_at is not None:
                if now - state.probe_started_at <= self.cooldown_seconds:
                    return True
            elif state.last_failure_at is not None and now - state.last_failure_at <= self.cooldown_seconds:
                return True

            shard.states[key] = BreakerState(
                consecutive_failures=state.consecutive_failures,
                open=True,
                last_failure_at=state.last_failure_at,
                probe_started_at=now,
            )
        logger.info("Breaker for %s half-open, granting probe", key)
        return False

    def record_failure(self, symbol: str) -> BreakerState:
        key = self._key(symbol)
        shard = self._shard(key)
        with shard.lock:
            previous = shard.states.get(key, _CLOSED)
            failures = previous.consecutive_failures + 1
            state = BreakerState(
                consecutive_failures=failures,
                open=failures >= self.failure_threshold,
                last_failure_at=self._clock(),
                probe_started_at=None,
            )
            shard.states[key] = state

        if state.open and not previous.open:
            logger.warning("Breaker for %s opened after %s consecutive failures", key, failures)
        elif state.open:
            logger.warning("Breaker for %s stays open (failures=%s)", key, failures)
        else:
            logger.debug("Recorded failure for %s (%s/%s)", key, failures, self.failure_threshold)
        return state

    def record_success(self, symbol: str) -> BreakerState:
        key = self._key(symbol)
        shard = self._shard(key)
        with shard.lock:
            previous = shard.states.pop(key, _CLOSED)
        if previous.open:
            logger.info("Breaker for %s closed after successful probe", key)
        return _CLOSED

    def snapshot(self, symbol: str) -> BreakerState:
        key = self._key(symbol)
        shard = self._shard(key)
        with shard.lock:
            return shard.states.get(key, _CLOSED)

    def open_symbols(self) -> list[str]:
        symbols: list[str] = []
        for shard in self._shards:
            with shard.lock:
                symbols.extend(key for key, state in shard.states.items() if state.open)
        return sorted(symbols)

    def reset(self, symbol: str | None = None) -> None:
        if symbol is not None:
            key = self._key(symbol)
            shard = self._shard(key)
            with shard.lock:
                shard.states.pop(key, None)
            return
        for shard in self._shards:
            with shard.lock:
                shard.states.clear()
