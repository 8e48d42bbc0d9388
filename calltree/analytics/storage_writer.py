"""
Async trace writer

Moves storage I/O off the command path: submit() enqueues into a bounded
queue and returns immediately; one daemon thread drains the queue into
the storage backend. Failures are logged and counted, never raised to
the submitter.
"""

import logging
import queue
import threading
from typing import Any, Dict, Optional, Tuple

from calltree.analytics.analytics_types import Analytics
from calltree.analytics.execution_tracer import ExecutionFlow
from calltree.analytics.trace_store import StorageBackend


logger = logging.getLogger(__name__)


_STOP = object()


class AsyncTraceWriter:
    """
    Fire-and-forget persistence for completed traces

    Args:
        storage: Backend receiving store_trace() calls
        max_queue_size: Pending writes before new ones are dropped
    """

    def __init__(self, storage: StorageBackend, max_queue_size: int = 1000):
        self.storage = storage
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue_size)
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._thread: Optional[threading.Thread] = None
        self._running = False

        self.written = 0
        self.failed = 0
        self.dropped = 0

    def start(self) -> None:
        """Start the writer thread"""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(
                target=self._write_loop,
                daemon=True,
                name="AsyncTraceWriter",
            )
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Drain pending writes and stop the writer thread"""
        with self._lock:
            if not self._running:
                return
            self._running = False
            thread = self._thread
            self._thread = None

        # Blocks until the sentinel fits; pending writes ahead of it are kept
        self._queue.put(_STOP)
        if thread is not None:
            thread.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._running

    def submit(
        self,
        flow: ExecutionFlow,
        analytics: Analytics,
        stored_at: Optional[float] = None,
    ) -> bool:
        """
        Enqueue a trace for persistence

        Returns:
            False if the writer is stopped or the queue is full
        """
        if not self._running:
            logger.warning(f"Trace writer is not running, dropping trace {flow.trace_id}")
            self._count_dropped()
            return False

        with self._lock:
            self._pending += 1
        try:
            self._queue.put_nowait((flow, analytics, stored_at))
            return True
        except queue.Full:
            self._finish_one()
            logger.warning(f"Trace write queue full, dropping trace {flow.trace_id}")
            self._count_dropped()
            return False

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until all submitted writes have been attempted

        Returns:
            True if every pending write finished within the timeout
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    @property
    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "written": self.written,
                "failed": self.failed,
                "dropped": self.dropped,
                "pending": self._pending,
            }

    def _count_dropped(self) -> None:
        with self._lock:
            self.dropped += 1

    def _finish_one(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def _write_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._write(item)
            finally:
                self._finish_one()

    def _write(self, item: Tuple[ExecutionFlow, Analytics, Optional[float]]) -> None:
        flow, analytics, stored_at = item
        try:
            self.storage.store_trace(flow, analytics, stored_at=stored_at)
            with self._lock:
                self.written += 1
        except Exception as e:
            logger.warning(f"Failed to store trace {flow.trace_id}: {e}")
            with self._lock:
                self.failed += 1


__all__ = ["AsyncTraceWriter"]
