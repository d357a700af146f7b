"""Push notification channels.

Topics follow three patterns:

- ``pipeline:{pipeline_id}``: placement, insert, delete and row changes of
  items placed in that pipeline.
- ``structure``: pipelines/stages table changes.
- ``tags``: tag assignments and the tag catalog.

Payloads are JSON strings; parsing into typed events happens in the
reconciler so a malformed payload is absorbed there, not here.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from typing import Any

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class NotificationChannel(ABC):
    """Subscribe/publish stream of change notifications (at-least-once)."""

    @abstractmethod
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def subscribe(self, topics: Iterable[str]) -> AsyncIterator[str]:
        """Yield raw payloads from ``topics`` in arrival order until cancelled."""
        ...


class InMemoryChannel(NotificationChannel):
    """Process-local fan-out channel backed by asyncio queues."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[str]]] = {}

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        message = json.dumps(payload, default=str)
        for queue in self._subscribers.get(topic, []):
            queue.put_nowait(message)

    async def subscribe(self, topics: Iterable[str]) -> AsyncIterator[str]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        topics = list(topics)
        for topic in topics:
            self._subscribers.setdefault(topic, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            for topic in topics:
                queues = self._subscribers.get(topic, [])
                if queue in queues:
                    queues.remove(queue)


class RedisChannel(NotificationChannel):
    """Redis pub/sub channel.

    Args:
        redis: Async Redis client created with decode_responses=True.
        prefix: Channel name prefix, isolates deployments sharing a Redis.
        poll_timeout: Seconds to block per get_message call.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "kanban", poll_timeout: float = 1.0) -> None:
        self._redis = redis
        self._prefix = prefix
        self._poll_timeout = poll_timeout

    def _channel(self, topic: str) -> str:
        return f"{self._prefix}:{topic}"

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        receivers = await self._redis.publish(self._channel(topic), json.dumps(payload, default=str))
        logger.debug("channel.published", topic=topic, receivers=receivers)

    async def subscribe(self, topics: Iterable[str]) -> AsyncIterator[str]:
        channels = [self._channel(topic) for topic in topics]
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(*channels)
        logger.info("channel.subscribed", channels=channels)
        try:
            while True:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
                if message and message["type"] == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(*channels)
            await pubsub.aclose()
