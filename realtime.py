"""
In-process change feed.

Writers publish a change on a topic; subscribers are async callbacks that
re-run their read path when notified. The ``/ws/events`` socket registers one
callback per open connection.
"""
import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

from app_logger import get_logger

logger = get_logger("realtime")

Callback = Callable[[Dict[str, Any]], Awaitable[None]]

EVENTS_TOPIC = "events"


class ChangeFeed:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callback]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, callback: Callback) -> None:
        async with self._lock:
            self._subscribers[topic].append(callback)
            logger.debug("Subscriber added to %s (%d total)", topic, len(self._subscribers[topic]))

    async def unsubscribe(self, topic: str, callback: Callback) -> None:
        async with self._lock:
            try:
                self._subscribers[topic].remove(callback)
            except ValueError:
                logger.warning("Attempted to remove unknown subscriber from %s", topic)
            if not self._subscribers[topic]:
                del self._subscribers[topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, change: Dict[str, Any]) -> int:
        """Invoke every subscriber of ``topic``; returns how many were notified."""
        async with self._lock:
            callbacks = list(self._subscribers.get(topic, ()))
        delivered = 0
        for callback in callbacks:
            try:
                await callback(change)
                delivered += 1
            except Exception:
                # drop the failing subscriber, keep notifying the rest
                logger.exception("Subscriber on %s failed; dropping it", topic)
                await self.unsubscribe(topic, callback)
        return delivered


feed = ChangeFeed()


def get_feed() -> ChangeFeed:
    return feed
