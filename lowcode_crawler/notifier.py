"""Progress broadcast channel.

In-process callbacks and WebSocket clients both receive every event. A slow
client only loses its own oldest events; publishing never blocks the crawl.
"""

from __future__ import annotations

import asyncio
import datetime
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from .models import ProgressEvent

MAX_PENDING_EVENTS = 256

Subscriber = Callable[[ProgressEvent], Any]


def envelope(event: ProgressEvent) -> Dict[str, Any]:
    """WebSocket message for one event."""
    return {
        "type": "TASK_STATUS_UPDATE",
        "payload": event.payload(),
        "timestamp": datetime.datetime.utcnow().isoformat() + "Z",
    }


class ProgressNotifier:
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("crawler.notifier")
        self._subscribers: List[Subscriber] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a sync or async callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def open_stream(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)
        self._queues.append(queue)
        return queue

    def close_stream(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def stream_count(self) -> int:
        return len(self._queues)

    async def publish(self, event: ProgressEvent) -> None:
        self.logger.debug(
            f"Broadcast {event.job_id}: {event.status} {event.progress:.1f}% {event.message}"
        )
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.warning(f"Progress subscriber failed: {e}")

        message = envelope(event)
        for queue in list(self._queues):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(message)
