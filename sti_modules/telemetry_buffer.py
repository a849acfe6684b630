"""
STI Telemetry Buffer - Bounded in-memory queues between ingestion and flushing.

Two independent FIFO queues (raw-audit and telemetry) with a hard capacity.
New items are shed when a queue is full; a failed batch goes back to the head
only if it fits, otherwise it is dropped wholesale.
"""

from __future__ import annotations

import collections
import threading
import typing

from sti_modules.sti_tools import RawMessage, TelemetryPoint

DEFAULT_CAPACITY: int = 10_000

T = typing.TypeVar("T")


class BoundedBuffer(typing.Generic[T]):
    """Thread-safe FIFO with a capacity ceiling that is never exceeded."""

    def __init__(self, name: str, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            msg = f"Buffer capacity must be positive: {capacity}"
            raise ValueError(msg)
        self.name: str = name
        self.capacity: int = capacity
        self._items: collections.deque[T] = collections.deque()
        self._lock: threading.Lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def append(self, item: T) -> bool:
        """Append at the tail. Returns False (item shed) if the buffer is full."""
        with self._lock:
            if len(self._items) >= self.capacity:
                return False
            self._items.append(item)
            return True

    def take(self, n: int) -> list[T]:
        """Remove and return up to n oldest items, oldest first."""
        with self._lock:
            count = min(n, len(self._items))
            return [self._items.popleft() for _ in range(count)]

    def requeue_front(self, batch: typing.Sequence[T]) -> bool:
        """
        Put a failed batch back at the head in its original order.

        Returns False (nothing requeued) if the batch would push the buffer past capacity.
        """
        with self._lock:
            if len(self._items) + len(batch) > self.capacity:
                return False
            self._items.extendleft(reversed(batch))
            return True


class DualBuffer:
    """The raw-audit and telemetry buffers of one ingestion process."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.raw: BoundedBuffer[RawMessage] = BoundedBuffer("raw", capacity)
        self.telemetry: BoundedBuffer[TelemetryPoint] = BoundedBuffer("telemetry", capacity)

    def is_empty(self) -> bool:
        return len(self.raw) == 0 and len(self.telemetry) == 0
