"""
STI Batch Flusher - Moves buffered records to the durable store.

Every flush interval, takes up to batch_size items from each buffer and
writes them with bounded exponential-backoff retry. A batch that still fails
goes back to the head of its buffer, or is dropped (and logged as data loss)
when that would exceed the buffer capacity.
"""

from __future__ import annotations

import threading
import time
import typing

from sti_modules import sti_tools

if typing.TYPE_CHECKING:
    from sti_modules.ingest_stats import IngestStats
    from sti_modules.store_writer import TelemetryStore
    from sti_modules.telemetry_buffer import BoundedBuffer, DualBuffer

T = typing.TypeVar("T")


class BatchFlusher:
    """Periodic flusher for a DualBuffer. One cycle runs at a time."""

    def __init__(
        self,
        buffers: DualBuffer,
        store: TelemetryStore,
        stats: IngestStats,
        batch_size: int,
        flush_interval_s: float,
        max_retries: int,
        retry_base_delay_s: float,
        sigterm_event: threading.Event,
        sleep: typing.Callable[[float], None] = time.sleep,
    ) -> None:
        self.buffers: DualBuffer = buffers
        self.store: TelemetryStore = store
        self.stats: IngestStats = stats
        self.batch_size: int = batch_size
        self.flush_interval_s: float = flush_interval_s
        self.max_retries: int = max_retries
        self.retry_base_delay_s: float = retry_base_delay_s
        self.sigterm_event: threading.Event = sigterm_event
        self.sleep: typing.Callable[[float], None] = sleep

        self._cycle_lock: threading.Lock = threading.Lock()
        self._flush_thread: threading.Thread | None = None

    def start(self) -> None:
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            daemon=True,
            name="batch-flusher",
        )
        self._flush_thread.start()
        sti_tools.log_diagnostic(
            f"flusher: started interval={self.flush_interval_s}s batch_size={self.batch_size}"
            f" max_retries={self.max_retries}"
        )

    def _flush_loop(self) -> None:
        """Run flush cycles at regular intervals until sigterm_event is set."""
        while not self.sigterm_event.is_set():
            if self.sigterm_event.wait(timeout=self.flush_interval_s):
                break
            try:
                self.flush_cycle()
            except Exception as e:
                sti_tools.print_exception(e, "flusher: cycle failed")

    def flush_cycle(self) -> int:
        """Flush one batch from each buffer. Returns the number of items written."""
        with self._cycle_lock:
            written = self._flush_buffer(
                self.buffers.raw, self.store.write_raw, "raw_inserted", "raw_dropped", "raw_rejected"
            )
            written += self._flush_buffer(
                self.buffers.telemetry,
                self.store.write_telemetry,
                "telemetry_inserted",
                "points_dropped",
                "points_rejected",
            )
            return written

    def _flush_buffer(
        self,
        buffer: BoundedBuffer[T],
        write: typing.Callable[[list[T]], int],
        inserted_counter: str,
        dropped_counter: str,
        rejected_counter: str,
    ) -> int:
        batch = buffer.take(self.batch_size)
        if not batch:
            return 0

        start = time.monotonic()
        written = self.write_with_retry(buffer.name, write, batch)
        if written is not None:
            rejected = len(batch) - written
            self.stats.incr(inserted_counter, written)
            if rejected:
                self.stats.incr(rejected_counter, rejected)
            self.stats.set_last_flush(sti_tools.iso_instant(sti_tools.utc_now()))
            sti_tools.log_result(
                f"flusher: inserted buffer={buffer.name} count={written} rejected={rejected}"
                f" duration_ms={int((time.monotonic() - start) * 1000)}"
            )
            return written

        self.stats.incr("insert_errors")
        if buffer.requeue_front(batch):
            sti_tools.log_warning(f"flusher: batch requeued buffer={buffer.name} count={len(batch)}")
        else:
            self.stats.incr(dropped_counter, len(batch))
            sti_tools.log_error(
                f"flusher: data loss, batch dropped buffer={buffer.name} count={len(batch)}"
                f" queued={len(buffer)} capacity={buffer.capacity}"
            )
        return 0

    def write_with_retry(self, name: str, write: typing.Callable[[list[T]], int], batch: list[T]) -> int | None:
        """
        Write batch: one attempt plus up to max_retries retries.

        Delay before retry k is retry_base_delay_s * 2**(k-1).
        Returns the number of rows the store accepted, or None when all attempts failed.
        Does not throw exceptions.
        """
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay_s = self.retry_base_delay_s * 2 ** (attempt - 1)
                sti_tools.log_warning(f"flusher: retrying buffer={name} retry={attempt} delay={delay_s}s")
                self.sleep(delay_s)
            try:
                return write(batch)
            except Exception as e:
                sti_tools.print_exception(e, f"flusher: write failed buffer={name} count={len(batch)} attempt={attempt}")
        return None

    def stop(self) -> None:
        """Wait for the flush thread to finish its in-flight cycle. Requires sigterm_event to be set."""
        if self._flush_thread is not None:
            sti_tools.log_diagnostic("flusher: stopping")
            self._flush_thread.join()
            self._flush_thread = None

    def drain(self) -> int:
        """Flush until both buffers are empty. Returns the number of items written."""
        sti_tools.log_diagnostic(
            f"flusher: draining raw={len(self.buffers.raw)} telemetry={len(self.buffers.telemetry)}"
        )
        written = 0
        while not self.buffers.is_empty():
            written += self.flush_cycle()
        sti_tools.log_diagnostic(f"flusher: drained written={written}")
        return written
