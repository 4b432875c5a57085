"""Batching span exporter.

Closed spans are appended to a bounded buffer from any thread or task. A single
background thread drains the buffer and ships batches through a transport, so
request handlers never wait on the network.

Batches are flushed when `max_export_batch_size` spans are waiting or when
`schedule_delay_s` has elapsed, whichever comes first. A batch the transport
keeps rejecting is dropped after `max_export_attempts` tries.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from .models import Span, utc_now

logger = logging.getLogger(__name__)


class SpanTransport(Protocol):
    """Ships a batch of closed spans to a collector."""

    def export(self, spans: Sequence[Span]) -> bool:
        """Send a batch; return False (or raise) on failure."""

    def shutdown(self) -> None:
        """Release connections."""


class InMemorySpanTransport:
    """Transport that keeps exported spans in memory (tests and local debugging)."""

    def __init__(self) -> None:
        """Create an empty in-memory transport."""
        self._lock = threading.Lock()
        self._spans: list[Span] = []
        self._batches = 0
        self.shut_down = False

    def export(self, spans: Sequence[Span]) -> bool:
        """Store the batch; always succeeds."""
        with self._lock:
            self._spans.extend(spans)
            self._batches += 1
        return True

    def shutdown(self) -> None:
        """Record that the transport was shut down."""
        self.shut_down = True

    @property
    def batches(self) -> int:
        """Number of batches received so far."""
        return self._batches

    def snapshot(self) -> list[Span]:
        """Return a point-in-time copy of all exported spans."""
        with self._lock:
            return list(self._spans)


class BatchSpanExporter:
    """Buffers closed spans and exports them in batches on a background thread."""

    def __init__(
        self,
        transport: SpanTransport,
        *,
        max_queue_size: int = 2048,
        max_export_batch_size: int = 512,
        schedule_delay_s: float = 5.0,
        max_export_attempts: int = 3,
        base_retry_delay_s: float = 0.5,
        backoff_multiplier: float = 2.0,
    ) -> None:
        if max_export_batch_size <= 0:
            raise ValueError(f"max_export_batch_size must be > 0. Got: {max_export_batch_size}")
        if max_queue_size < max_export_batch_size:
            raise ValueError("max_queue_size must be >= max_export_batch_size")
        if max_export_attempts <= 0:
            raise ValueError(f"max_export_attempts must be > 0. Got: {max_export_attempts}")

        self._transport = transport
        self._queue: queue.Queue[Span] = queue.Queue(maxsize=max_queue_size)
        self._batch_size = max_export_batch_size
        self._schedule_delay_s = schedule_delay_s
        self._max_attempts = max_export_attempts
        self._base_retry_delay_s = base_retry_delay_s
        self._backoff_multiplier = backoff_multiplier

        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._shutdown = threading.Event()
        self._flush_waiters: list[threading.Event] = []
        self._worker: threading.Thread | None = None
        self._closed = False

        self._exported = 0
        self._dropped = 0
        self._failed_batches = 0
        self._last_failure_at: datetime | None = None

    def _ensure_started(self) -> None:
        if self._worker is not None:
            return
        with self._lock:
            if self._worker is None:
                self._worker = threading.Thread(target=self._run_worker, name="span-exporter", daemon=True)
                self._worker.start()

    def export(self, span: Span) -> None:
        """Enqueue a closed span (never blocks; drops when the buffer is full)."""
        if self._closed:
            self._count_dropped(1)
            return
        self._ensure_started()
        # Checked again under the lock: shutdown flips `_closed` under the same
        # lock, so every span enqueued here precedes the worker's final drain.
        with self._lock:
            if self._closed:
                self._dropped += 1
                return
            try:
                self._queue.put_nowait(span)
            except queue.Full:
                self._dropped += 1
                return
        if self._queue.qsize() >= self._batch_size:
            self._wakeup.set()

    def force_flush(self, timeout_s: float | None = 30.0) -> bool:
        """Export everything buffered so far. Returns False on timeout."""
        if self._worker is None or self._closed:
            return True
        done = threading.Event()
        with self._lock:
            self._flush_waiters.append(done)
        self._wakeup.set()
        return done.wait(timeout_s)

    def shutdown(self, timeout_s: float | None = 30.0) -> None:
        """Flush remaining spans and stop the worker. Safe to call multiple times."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._shutdown.set()
        self._wakeup.set()
        if self._worker is not None:
            self._worker.join(timeout_s)
            if self._worker.is_alive():
                logger.warning("span exporter did not stop within %.1fs", timeout_s or 0.0)
            else:
                self._discard_leftovers()
        try:
            self._transport.shutdown()
        except Exception as exc:  # noqa: BLE001 - shutdown must complete
            logger.warning("span transport shutdown failed: %r", exc)

    def _discard_leftovers(self) -> None:
        """Count spans the stopped worker will never export as dropped."""
        leftover = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            leftover += 1
        if leftover:
            self._count_dropped(leftover)
            logger.warning("dropping %d spans queued after the exporter stopped", leftover)

    def _should_wake(self) -> bool:
        return self._shutdown.is_set() or bool(self._flush_waiters) or self._queue.qsize() >= self._batch_size

    def _run_worker(self) -> None:
        """Background loop: wait for a full batch, the schedule delay, a flush or shutdown."""
        while True:
            deadline = time.monotonic() + self._schedule_delay_s
            while not self._should_wake():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._wakeup.wait(remaining)
                self._wakeup.clear()

            # Take the waiters before draining: anything queued before they
            # asked is exported in this pass.
            with self._lock:
                waiters, self._flush_waiters = self._flush_waiters, []

            self._drain()

            for waiter in waiters:
                waiter.set()

            if self._shutdown.is_set():
                self._drain()
                with self._lock:
                    waiters, self._flush_waiters = self._flush_waiters, []
                for waiter in waiters:
                    waiter.set()
                return

    def _drain(self) -> None:
        while True:
            batch: list[Span] = []
            while len(batch) < self._batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except queue.Empty:
                    break
            if not batch:
                return
            self._export_batch(batch)

    def _export_batch(self, batch: list[Span]) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                ok = self._transport.export(batch)
                error: Exception | None = None
            except Exception as exc:  # noqa: BLE001 - transport errors never reach callers
                ok = False
                error = exc

            if ok:
                with self._lock:
                    self._exported += len(batch)
                return

            if attempt >= self._max_attempts:
                with self._lock:
                    self._failed_batches += 1
                    self._last_failure_at = utc_now()
                self._count_dropped(len(batch))
                logger.warning(
                    "dropping %d spans after %d failed export attempts: %r", len(batch), attempt, error
                )
                return

            delay = self._base_retry_delay_s * (self._backoff_multiplier ** (attempt - 1))
            # Shutdown cuts the backoff short; the remaining attempts still run.
            self._shutdown.wait(delay)

    def _count_dropped(self, n: int) -> None:
        with self._lock:
            self._dropped += n

    def degraded_status(self) -> dict[str, object]:
        """Return a minimal snapshot of export health."""
        return {
            "exported_spans": self._exported,
            "dropped_spans": self._dropped,
            "failed_batches": self._failed_batches,
            "last_failure_at": self._last_failure_at,
            "queued_spans": self._queue.qsize(),
        }
