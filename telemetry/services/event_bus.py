from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]


def offer(queue: asyncio.Queue[Any], message: Any) -> None:
    """Put without blocking, dropping the oldest queued item when full."""
    if queue.full():
        try:
            _ = queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    try:
        queue.put_nowait(message)
    except asyncio.QueueFull:
        pass


class EventBus:
    """Fan-out of update events to bounded per-consumer queues.

    Publishing never blocks: when a consumer falls behind, its oldest queued
    event is dropped to make room. ``topic=None`` receives every event.
    Listeners registered with ``listen`` are called synchronously on publish.
    """

    def __init__(self, maxsize: int = 200) -> None:
        self._maxsize = maxsize
        self._queues: dict[str | None, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._listeners: dict[str | None, list[EventListener]] = {}

    def subscribe(self, topic: str | None = None) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.setdefault(topic, set()).add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]], topic: str | None = None) -> None:
        targets = self._queues.get(topic)
        if targets is None:
            return
        targets.discard(queue)
        if not targets:
            del self._queues[topic]

    def listen(self, listener: EventListener, topic: str | None = None) -> Callable[[], None]:
        self._listeners.setdefault(topic, []).append(listener)

        def remove() -> None:
            listeners = self._listeners.get(topic)
            if listeners and listener in listeners:
                listeners.remove(listener)

        return remove

    def subscriber_count(self, topic: str | None = None) -> int:
        return len(self._queues.get(topic, ()))

    def publish(self, message: dict[str, Any], topic: str | None = None) -> None:
        listeners = list(self._listeners.get(None, ()))
        if topic is not None:
            listeners.extend(self._listeners.get(topic, ()))
        for listener in listeners:
            try:
                listener(message)
            except Exception:
                logger.exception("Event listener failed type=%s", message.get("type"))

        targets = list(self._queues.get(None, ()))
        if topic is not None:
            targets.extend(self._queues.get(topic, ()))

        for queue in targets:
            offer(queue, message)

    def clear(self) -> None:
        self._queues.clear()
        self._listeners.clear()
