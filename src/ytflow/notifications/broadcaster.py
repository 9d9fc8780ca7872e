"""Notification sinks that relay coordinator events to viewers."""

import logging
import queue
import threading
from collections.abc import Iterable
from typing import Any, Protocol

from ytflow.models.events import EventType, Notification

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def publish(self, task_id: str, event_type: EventType, payload: dict[str, Any]) -> None: ...


class LoggingSink:
    """Writes every event to the log."""

    def publish(self, task_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        logger.debug(f"[{task_id}] {event_type.value}: {payload}")


class EventBroadcaster:
    """Fans events out to per-task subscriber queues.

    Delivery is best-effort: a subscriber that falls behind loses its oldest
    events rather than blocking the publisher.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, list[queue.Queue]] = {}
        self._lock = threading.Lock()

    def subscribe(self, task_id: str) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._subscribers.setdefault(task_id, []).append(q)
        return q

    def unsubscribe(self, task_id: str, q: queue.Queue) -> None:
        with self._lock:
            subscribers = self._subscribers.get(task_id, [])
            if q in subscribers:
                subscribers.remove(q)
            if not subscribers:
                self._subscribers.pop(task_id, None)

    def subscriber_count(self, task_id: str | None = None) -> int:
        with self._lock:
            if task_id is not None:
                return len(self._subscribers.get(task_id, []))
            return sum(len(s) for s in self._subscribers.values())

    def publish(self, task_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        notification = Notification(task_id=task_id, type=event_type, data=payload)
        with self._lock:
            subscribers = list(self._subscribers.get(task_id, []))
        for q in subscribers:
            self._offer(q, notification)

    @staticmethod
    def _offer(q: queue.Queue, notification: Notification) -> None:
        while True:
            try:
                q.put_nowait(notification)
                return
            except queue.Full:
                try:
                    q.get_nowait()
                except queue.Empty:
                    pass


class CompositeSink:
    """Publishes to several sinks; one failing sink does not stop the others."""

    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks = list(sinks)

    def publish(self, task_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.publish(task_id, event_type, payload)
            except Exception as e:
                logger.warning(f"Notification sink {type(sink).__name__} failed: {e}")
