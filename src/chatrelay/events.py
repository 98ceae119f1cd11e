"""Observability channel for the orchestration core.

The core publishes structured events (tool calls, cache annotation counts,
state transitions, model usage, log lines) onto an ``EventBus``. Transport code
subscribes to it and decides how to surface them, e.g. the SSE log stream.
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Set


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscription:
    """A bounded queue of events for one subscriber."""

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, event: Dict[str, Any]) -> bool:
        """Queue an event without waiting. Returns False when it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def get(self) -> Dict[str, Any]:
        return await self._queue.get()

    def get_nowait(self) -> Dict[str, Any]:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()


class EventBus:
    """Fan-out publisher of structured events to any number of subscribers."""

    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscribers: Set[Subscription] = set()
        self.dropped_events = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event_type: str, **payload: Any) -> Dict[str, Any]:
        """Publish an event. Never blocks; slow subscribers lose events.

        Args:
            event_type: Value of the event's ``type`` field (str).
            **payload: Extra fields merged into the event.

        Returns:
            dict: The event as delivered, including its ``timestamp``.
        """
        event = {"type": event_type, "timestamp": utc_timestamp(), **payload}
        for sub in list(self._subscribers):
            if not sub.put(event):
                self.dropped_events += 1
        return event

    def add_subscriber(self) -> Subscription:
        """Register a new subscriber; pair with ``remove_subscriber``."""
        sub = Subscription(self._queue_size)
        self._subscribers.add(sub)
        return sub

    def remove_subscriber(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)

    @contextmanager
    def subscribe(self) -> Iterator[Subscription]:
        """Subscribe for the duration of a ``with`` block."""
        sub = self.add_subscriber()
        try:
            yield sub
        finally:
            self.remove_subscriber(sub)


class BroadcastLogHandler(logging.Handler):
    """Republish log records as ``log`` events on an EventBus."""

    def __init__(self, bus: EventBus, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._bus = bus

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        self._bus.emit(
            "log",
            message=message,
            level=record.levelname.lower(),
            logger=record.name,
        )
