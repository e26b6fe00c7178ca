"""
In-process listener fan-out for chat events.

Websocket handlers subscribe to topics (``chat:<id>``, ``user:<id>``) and
receive every event published to them. Publishing is safe from the
threadpool workers that run the sync routes.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, Set

from fastapi import WebSocket, status

from config import SUBSCRIBER_QUEUE_SIZE

logger = logging.getLogger(__name__)


def chat_topic(chat_id: str) -> str:
    return f"chat:{chat_id}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass(eq=False)
class Subscription:
    topics: tuple
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue
    # set once the queue overflowed and the subscriber was removed
    dropped: bool = False


class Broadcaster:
    """Topic -> subscriber registry."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, topics: Iterable[str]) -> Subscription:
        """Register a queue for ``topics``; must be called from a running event loop."""
        sub = Subscription(
            topics=tuple(topics),
            loop=asyncio.get_running_loop(),
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        with self._lock:
            for topic in sub.topics:
                self._subscribers[topic].add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            for topic in sub.topics:
                subs = self._subscribers.get(topic)
                if subs is None:
                    continue
                subs.discard(sub)
                if not subs:
                    del self._subscribers[topic]

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, event: dict) -> int:
        """Queue ``event`` for every subscriber of ``topic``; returns how many were reached."""
        with self._lock:
            subs = list(self._subscribers.get(topic, ()))
        delivered = 0
        for sub in subs:
            try:
                sub.loop.call_soon_threadsafe(self._deliver, sub, event)
                delivered += 1
            except RuntimeError:
                # event loop already closed
                logger.debug("Dropping subscriber on closed loop for %s", topic)
                self.unsubscribe(sub)
        return delivered

    def _deliver(self, sub: Subscription, event: dict) -> None:
        if sub.dropped:
            return
        try:
            sub.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Subscriber on %s fell behind; dropping it", ", ".join(sub.topics))
            sub.dropped = True
            self.unsubscribe(sub)


broadcaster = Broadcaster()


async def stream(websocket: WebSocket, topics: Iterable[str]) -> None:
    """Accept the websocket and forward published events until the client leaves.

    The subscription is registered before the handshake completes, so a
    client that has been accepted cannot miss an event.
    """
    sub = broadcaster.subscribe(topics)

    async def forward() -> None:
        while True:
            event = await sub.queue.get()
            await websocket.send_json(event)
            if sub.dropped and sub.queue.empty():
                await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
                return

    async def watch_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = set()
    try:
        await websocket.accept()
        tasks = {asyncio.create_task(forward()), asyncio.create_task(watch_disconnect())}
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None:
                logger.debug("Websocket stream ended: %r", task.exception())
    finally:
        for task in tasks:
            task.cancel()
        broadcaster.unsubscribe(sub)
