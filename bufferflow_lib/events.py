"""Event sinks that receive classified device events from a buffer flow."""

import logging
import queue
import threading
from typing import Any, List, Protocol, Union

from bufferflow_lib.models import CommandComplete, LineData, PortError, WipedQueue, to_json

logger = logging.getLogger(__name__)

Event = Union[CommandComplete, LineData, WipedQueue, PortError]


class EventSink(Protocol):
    """Anything that accepts published events (fire-and-forget)."""

    def publish(self, event: Event) -> None:
        """Publish one event. Must not block the caller."""
        ...


class CollectingSink:
    """Thread-safe in-memory sink keeping every published event in order."""

    def __init__(self) -> None:
        self._events: List[Event] = []
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    def publish(self, event: Event) -> None:
        with self._changed:
            self._events.append(event)
            self._changed.notify_all()

    def snapshot(self) -> List[Event]:
        """Copy of all events published so far, oldest first."""
        with self._lock:
            return list(self._events)

    def of_type(self, kind: type) -> List[Any]:
        with self._lock:
            return [e for e in self._events if isinstance(e, kind)]

    def wait_for(self, kind: type, count: int = 1, timeout: float = 5.0) -> bool:
        """Wait until at least `count` events of type `kind` were published.

        Returns:
            True if reached, False on timeout
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: sum(isinstance(e, kind) for e in self._events) >= count,
                timeout=timeout,
            )

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class Hub:
    """Fan-out of serialized events to any number of subscribers.

    Each subscriber gets its own bounded queue of JSON/text messages. A slow
    subscriber whose queue is full loses its oldest message rather than
    blocking the publishing thread.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._subscribers: List["queue.Queue[str]"] = []
        self._lock = threading.Lock()
        self._maxsize = maxsize

    def subscribe(self) -> "queue.Queue[str]":
        q: "queue.Queue[str]" = queue.Queue(maxsize=self._maxsize)
        with self._lock:
            self._subscribers.append(q)
        logger.debug(f"Hub subscriber added, total: {len(self._subscribers)}")
        return q

    def unsubscribe(self, q: "queue.Queue[str]") -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)
        logger.debug(f"Hub subscriber removed, total: {len(self._subscribers)}")

    def publish(self, event: Event) -> None:
        message = to_json(event)
        # Publishers are serialized so a full queue cannot refill between drop and put
        with self._lock:
            for q in self._subscribers:
                try:
                    q.put_nowait(message)
                except queue.Full:
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        pass
                    q.put_nowait(message)
                    logger.warning("Hub subscriber queue full, dropped oldest message")

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
