"""
STI Ingest Stats - Process-wide pipeline counters.

Counters are monotonic and only ever incremented. Readers (status server,
shutdown summary) take a consistent snapshot under the lock.
"""

from __future__ import annotations

import threading
import typing

COUNTER_NAMES: tuple[str, ...] = (
    "messages_received",
    "messages_processed",
    "messages_failed",
    "messages_skipped",
    "decode_errors",
    "points_buffered",
    "points_shed",
    "raw_buffered",
    "raw_shed",
    "telemetry_inserted",
    "raw_inserted",
    "insert_errors",
    "points_dropped",
    "raw_dropped",
    "points_rejected",
    "raw_rejected",
    "devices_registered",
    "device_errors",
)


class IngestStats:
    """Thread-safe counters plus the instant of the last successful flush."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = dict.fromkeys(COUNTER_NAMES, 0)
        self._last_flush: str | None = None
        self._lock: threading.Lock = threading.Lock()

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in self._counters:
            msg = f"Unknown counter: {name}"
            raise KeyError(msg)
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def set_last_flush(self, instant: str) -> None:
        with self._lock:
            self._last_flush = instant

    @property
    def last_flush(self) -> str | None:
        with self._lock:
            return self._last_flush

    def snapshot(self) -> dict[str, typing.Any]:
        """Copy of all counters and last_flush, taken atomically."""
        with self._lock:
            return {**self._counters, "last_flush": self._last_flush}
