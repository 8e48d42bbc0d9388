"""
Analytics notifications

Explicit message passing between the real-time processor and its
readers. Two delivery styles:
- Observer callbacks, invoked synchronously in subscription order
- Bounded queues, for consumers on other threads (oldest item dropped when full)
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)


# Event names
PROCESSING_STARTED = "processing:started"
PROCESSING_STOPPED = "processing:stopped"
TRACE_PROCESSED = "trace:processed"
METRICS_UPDATED = "metrics:updated"
ALERT_CREATED = "alert:created"
ALERT_RESOLVED = "alert:resolved"
ERROR = "error"


@dataclass
class AnalyticsEvent:
    """A published notification"""
    event_type: str
    payload: Any = None
    timestamp: float = field(default_factory=time.time)


class EventBus:
    """
    Publish/subscribe hub for analytics notifications

    A failing callback is logged and skipped; it never affects the
    publisher or other subscribers.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks: List[Tuple[Optional[str], Callable[[AnalyticsEvent], None]]] = []
        self._queues: List[Tuple[Optional[str], queue.Queue]] = []
        self.dropped_events = 0

    def subscribe(
        self,
        callback: Callable[[AnalyticsEvent], None],
        event_type: Optional[str] = None,
    ) -> Callable[[], None]:
        """
        Register a callback

        Args:
            callback: Called with each AnalyticsEvent
            event_type: Only deliver this event type (all types if None)

        Returns:
            Function that removes the subscription
        """
        entry = (event_type, callback)
        with self._lock:
            self._callbacks.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._callbacks:
                    self._callbacks.remove(entry)

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 100, event_type: Optional[str] = None) -> queue.Queue:
        """Register a bounded queue that receives AnalyticsEvent items"""
        events: queue.Queue = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._queues.append((event_type, events))
        return events

    def unsubscribe_queue(self, events: queue.Queue) -> None:
        with self._lock:
            self._queues = [(t, q) for t, q in self._queues if q is not events]

    def publish(self, event_type: str, payload: Any = None) -> AnalyticsEvent:
        """Deliver an event to all matching subscribers"""
        event = AnalyticsEvent(event_type=event_type, payload=payload)

        with self._lock:
            callbacks = [cb for t, cb in self._callbacks if t is None or t == event_type]
            queues = [q for t, q in self._queues if t is None or t == event_type]

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed for {event_type}: {e}")

        for events in queues:
            self._offer(events, event)

        return event

    def _offer(self, events: queue.Queue, event: AnalyticsEvent) -> None:
        while True:
            try:
                events.put_nowait(event)
                return
            except queue.Full:
                try:
                    events.get_nowait()
                    with self._lock:
                        self.dropped_events += 1
                except queue.Empty:
                    pass

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._callbacks) + len(self._queues)


__all__ = [
    "AnalyticsEvent",
    "EventBus",
    "PROCESSING_STARTED",
    "PROCESSING_STOPPED",
    "TRACE_PROCESSED",
    "METRICS_UPDATED",
    "ALERT_CREATED",
    "ALERT_RESOLVED",
    "ERROR",
]
