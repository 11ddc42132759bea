"""Server-Sent Events (SSE) broadcaster for real-time recognition events."""

from __future__ import annotations

import asyncio
import threading
from typing import Any


class EventBroadcaster:
    """Fan-out broadcaster that pushes event data to all connected SSE clients.

    Each client gets its own :class:`asyncio.Queue` via :meth:`subscribe`.
    :meth:`broadcast` puts data onto every subscriber queue using non-blocking
    ``put_nowait`` so a slow consumer never blocks other clients or the
    recognition cycle. If a queue is full the message is dropped for that
    subscriber.

    :meth:`shutdown` pushes a ``None`` sentinel so open streams can finish.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._subscribers: set[asyncio.Queue[dict[str, Any] | None]] = set()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[dict[str, Any] | None]:
        """Create and register a new subscriber queue."""
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=self._maxsize)
        with self._lock:
            self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any] | None]) -> None:
        """Remove a subscriber queue."""
        with self._lock:
            self._subscribers.discard(queue)

    def broadcast(self, event_data: dict[str, Any]) -> int:
        """Push *event_data* to every subscriber. Returns how many received it."""
        if self._closed:
            return 0
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for queue in subscribers:
            try:
                queue.put_nowait(event_data)
                delivered += 1
            except asyncio.QueueFull:
                # Backpressure: drop the event for this slow subscriber
                pass
        return delivered

    def shutdown(self) -> None:
        """Stop accepting events and wake every subscriber with a sentinel."""
        self._closed = True
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for queue in subscribers:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                # Make room for the sentinel; the stream is ending anyway
                queue.get_nowait()
                queue.put_nowait(None)
