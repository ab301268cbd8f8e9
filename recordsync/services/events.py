"""Explicit broadcast channel used instead of a global notification bus."""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict], None]


class EventChannel:
    """Fans out event dicts to subscribers and listener queues.

    Subscribers are plain callables run inside ``publish``, so their
    effects are visible before the publisher continues. Listener queues
    are for consumers that read at their own pace (the SSE stream).
    """

    def __init__(self, name: str, maxsize: int = 256):
        self.name = name
        self._maxsize = maxsize
        self._listeners: list[asyncio.Queue] = []
        self._subscribers: list[Subscriber] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> None:
        """Call *callback* synchronously with every published event."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [c for c in self._subscribers if c != callback]

    def add_listener(self) -> asyncio.Queue:
        """Add a new listener queue that receives every published event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._listeners.append(queue)
        return queue

    def remove_listener(self, queue: asyncio.Queue) -> None:
        """Remove a listener queue."""
        self._listeners = [q for q in self._listeners if q is not queue]

    def publish(self, data: dict) -> None:
        """Run subscribers, then queue data for every listener (drops oldest if full)."""
        for callback in list(self._subscribers):
            try:
                callback(data)
            except Exception:
                logger.exception(f"[{self.name}] subscriber {callback!r} failed")

        for queue in self._listeners:
            try:
                queue.put_nowait(data)
            except asyncio.QueueFull:
                logger.warning(f"[{self.name}] listener queue full, dropping oldest event")
                queue.get_nowait()
                queue.put_nowait(data)
