"""Durable, session-scoped key/value storage for the board cache.

The durable tier survives tab reloads but is scoped to one browser session:
every key is prefixed with s:{session_id}: so two sessions never read each
other's entries. Values are only ever a fast-start hint; the board cache
pairs every hit from this tier with an immediate background reload.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable

import redis.asyncio as aioredis


class SessionStore(ABC):
    """Minimal string key/value store with per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``. Returns keys removed."""
        ...


class InMemorySessionStore(SessionStore):
    """Process-local session store (single process, tests)."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._data if k.startswith(prefix)]
        for k in doomed:
            del self._data[k]
        return len(doomed)


class RedisSessionStore(SessionStore):
    """Session store backed by Redis, with automatic s:{session_id}: prefixing.

    Args:
        redis_client: Async Redis client created with decode_responses=True.
        session_id: Identifier of the browser session owning the entries.
    """

    def __init__(self, redis_client: aioredis.Redis, session_id: str) -> None:
        self._redis = redis_client
        self._session_id = session_id

    def _key(self, key: str) -> str:
        """Generate a session-prefixed key: s:{session_id}:{key}."""
        return f"s:{self._session_id}:{key}"

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self._redis.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def delete_prefix(self, prefix: str) -> int:
        keys = [k async for k in self._redis.scan_iter(match=self._key(prefix) + "*")]
        if not keys:
            return 0
        return await self._redis.delete(*keys)


def get_redis_client(url: str) -> aioredis.Redis:
    """Create an async Redis client with string responses."""
    return aioredis.from_url(url, decode_responses=True)
