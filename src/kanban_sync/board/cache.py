"""Two-tier board cache: in-memory first, durable session tier second.

The materialized item list of a board is cached per (pipeline, viewer):

- Memory tier: authoritative for the life of the engine, short TTL.
- Session tier: survives restarts within the session, longer TTL, size-capped.
  A hit from this tier is a fast-start hint only; the caller must pair it
  with an immediate forced background reload.

Key derivation is a hard contract, not an optimization: pipelines whose item
set is filtered per viewer must be keyed by viewer id, otherwise one user
would be served another user's board. read()/write() raise ValueError when a
scoped pipeline is addressed without a viewer id.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from urllib.parse import quote

import structlog
from pydantic import ValidationError

from src.kanban_sync.board.schemas import BoardItem, CacheEntry, CacheTier, board_items_adapter
from src.kanban_sync.board.session import SessionStore
from src.kanban_sync.core.monitoring import board_cache_reads_total

logger = structlog.get_logger(__name__)

KEY_PREFIX = "kanban:"
UNSCOPED_VIEWER = "all"


def cache_key(pipeline_id: str, viewer_id: str | None = None) -> str:
    """Deterministic key for a (pipeline, viewer) pair.

    Components are percent-quoted so one pipeline id can never be a prefix
    of another pipeline's keys.
    """
    viewer = viewer_id if viewer_id else UNSCOPED_VIEWER
    return f"{KEY_PREFIX}{quote(pipeline_id, safe='')}:{quote(viewer, safe='')}"


def _pipeline_prefix(pipeline_id: str) -> str:
    return f"{KEY_PREFIX}{quote(pipeline_id, safe='')}:"


class BoardCache:
    """Per-(pipeline, viewer) cache of board item lists.

    Args:
        session_store: Durable tier; None disables it (memory only).
        memory_ttl_seconds: Maximum age of a memory-tier hit.
        session_ttl_seconds: Maximum age of a session-tier hit.
        max_session_bytes: Payloads larger than this skip the session tier.
        scoped_pipeline_ids: Pipelines whose items are filtered per viewer.
        clock: Wall clock (entries outlive the process), injectable for tests.
    """

    def __init__(
        self,
        session_store: SessionStore | None = None,
        memory_ttl_seconds: float = 300.0,
        session_ttl_seconds: float = 900.0,
        max_session_bytes: int = 4 * 1024 * 1024,
        scoped_pipeline_ids: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session_store
        self._memory_ttl = memory_ttl_seconds
        self._session_ttl = session_ttl_seconds
        self._max_session_bytes = max_session_bytes
        self._scoped: set[str] = set(scoped_pipeline_ids)
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}

    def mark_scoped(self, pipeline_id: str) -> None:
        """Declare that ``pipeline_id`` filters its items per viewer."""
        self._scoped.add(pipeline_id)

    def is_scoped(self, pipeline_id: str) -> bool:
        return pipeline_id in self._scoped

    def _key_for(self, pipeline_id: str, viewer_id: str | None) -> str:
        if pipeline_id in self._scoped and not viewer_id:
            raise ValueError(
                f"Pipeline '{pipeline_id}' is viewer-scoped; a viewer id is required for its cache key"
            )
        return cache_key(pipeline_id, viewer_id)

    async def read(self, pipeline_id: str, viewer_id: str | None = None) -> CacheEntry | None:
        """Look up the memory tier, then the session tier.

        Returns:
            The entry (with ``tier`` telling where it came from) or None on a miss.
        """
        key = self._key_for(pipeline_id, viewer_id)
        now = self._clock()

        entry = self._memory.get(key)
        if entry is not None:
            if now - entry.fetched_at <= self._memory_ttl:
                board_cache_reads_total.labels(tier=CacheTier.MEMORY.value).inc()
                return entry
            del self._memory[key]

        entry = await self._read_session(key, now)
        board_cache_reads_total.labels(tier=entry.tier.value if entry else "miss").inc()
        return entry

    async def _read_session(self, key: str, now: float) -> CacheEntry | None:
        if self._session is None:
            return None
        try:
            raw = await self._session.get(key)
        except Exception as exc:
            logger.warning("board_cache.session_read_failed", key=key, error=str(exc))
            return None
        if not raw:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("board_cache.session_entry_corrupt", key=key)
            await self._session.delete(key)
            return None
        if entry.key != key or now - entry.fetched_at > self._session_ttl:
            await self._session.delete(key)
            return None
        return entry.model_copy(update={"tier": CacheTier.SESSION})

    async def write(self, pipeline_id: str, viewer_id: str | None, items: Iterable[BoardItem]) -> CacheEntry:
        """Store ``items`` in both tiers."""
        key = self._key_for(pipeline_id, viewer_id)
        entry = CacheEntry(
            key=key,
            items=board_items_adapter.validate_python(tuple(items)),
            fetched_at=self._clock(),
            tier=CacheTier.MEMORY,
        )
        self._memory[key] = entry

        if self._session is not None:
            payload = entry.model_dump_json()
            if len(payload.encode("utf-8")) > self._max_session_bytes:
                logger.info("board_cache.session_payload_too_large", key=key, size=len(payload))
            else:
                try:
                    await self._session.set(key, payload, self._session_ttl)
                except Exception as exc:
                    logger.warning("board_cache.session_write_failed", key=key, error=str(exc))
        return entry

    async def invalidate(self, pipeline_id: str) -> None:
        """Drop every entry (all viewers, both tiers) for ``pipeline_id``.

        The memory tier is cleared before the first suspension point.
        """
        prefix = _pipeline_prefix(pipeline_id)
        for key in [k for k in self._memory if k.startswith(prefix)]:
            del self._memory[key]

        if self._session is not None:
            try:
                await self._session.delete_prefix(prefix)
            except Exception as exc:
                logger.warning("board_cache.session_invalidate_failed", pipeline_id=pipeline_id, error=str(exc))
        logger.debug("board_cache.invalidated", pipeline_id=pipeline_id)
