"""
Export event broadcast.

The JobStateManager publishes every persisted change through a broadcaster;
the transport that forwards events to clients subscribes here.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

STATUS_EVENT = "export:status"
COMPLETED_EVENT = "export:completed"
FAILED_EVENT = "export:failed"
CANCELLED_EVENT = "export:cancelled"


class Broadcaster(ABC):
    """Abstract base class for event broadcast backends."""

    @abstractmethod
    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def subscribe(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Yield (event, payload) pairs published after subscribing."""
        pass

    async def close(self) -> None:
        pass


class InMemoryBroadcaster(Broadcaster):
    """Fan-out to in-process subscriber queues."""

    def __init__(self, max_queue_size: int = 1000):
        self._subscribers: list[asyncio.Queue] = []
        self._max_queue_size = max_queue_size

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait((event, payload))
            except asyncio.QueueFull:
                # Delivery is at-least-once for live subscribers only
                logger.warning(f"Dropping {event} for slow subscriber")

    def listen(self) -> asyncio.Queue:
        """Register a subscriber queue immediately and return it."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unlisten(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def subscribe(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        queue = self.listen()
        try:
            while True:
                yield await queue.get()
        finally:
            self.unlisten(queue)


class RedisBroadcaster(Broadcaster):
    """Redis pub/sub broadcaster on a single channel."""

    def __init__(self, redis_url: str = "", channel: str = "export-events", client=None):
        self._redis_url = redis_url
        self._channel = channel
        self._redis = client

    async def _get_redis(self):
        """Lazy initialize Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
            logger.info("Redis broadcaster connected")
        return self._redis

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        client = await self._get_redis()
        message = json.dumps({"event": event, "payload": payload}, default=str)
        try:
            await client.publish(self._channel, message)
        except RedisError as e:
            # Events are advisory; the persisted record is authoritative
            logger.warning(f"Failed to publish {event}: {type(e).__name__}: {e}")

    async def subscribe(self) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        client = await self._get_redis()
        pubsub = client.pubsub()
        await pubsub.subscribe(self._channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = json.loads(message["data"])
                yield data["event"], data["payload"]
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def init_broadcaster(backend: str = "memory", redis_url: Optional[str] = None) -> Broadcaster:
    """Create the broadcaster for the configured backend."""
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required for the redis broadcast backend")
        logger.info("Using Redis pub/sub broadcaster")
        return RedisBroadcaster(redis_url)
    logger.info("Using in-memory broadcaster")
    return InMemoryBroadcaster()
