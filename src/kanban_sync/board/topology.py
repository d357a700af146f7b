"""Pipeline directory cache.

Memoizes the full pipeline -> stage topology shared by every board:

- Served from memory while younger than the TTL, unless a refresh is forced.
- Concurrent callers share one in-flight fetch (no duplicate network calls).
- invalidate() is synchronous and bumps a generation counter, so a fetch that
  started before the invalidation can still answer its own callers but never
  repopulates the cache with pre-invalidation data.
- Fetch errors propagate; stale data is never returned past invalidation.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from src.kanban_sync.board.schemas import PipelineTopology, find_pipeline
from src.kanban_sync.board.store import PipelineDirectory

logger = structlog.get_logger(__name__)


class TopologyCache:
    """TTL cache in front of a PipelineDirectory.

    Args:
        directory: Source of pipelines with their stages.
        ttl_seconds: Maximum age of a served topology.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        directory: PipelineDirectory,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = directory
        self._ttl = ttl_seconds
        self._clock = clock
        self._data: tuple[PipelineTopology, ...] | None = None
        self._fetched_at = 0.0
        self._generation = 0
        self._in_flight: asyncio.Future[tuple[PipelineTopology, ...]] | None = None

    @property
    def cached(self) -> tuple[PipelineTopology, ...] | None:
        """Last fetched topology, without any freshness check or network call."""
        return self._data

    def _is_fresh(self) -> bool:
        return self._data is not None and (self._clock() - self._fetched_at) < self._ttl

    async def get_topology(self, force_refresh: bool = False) -> tuple[PipelineTopology, ...]:
        """Return every pipeline with its stages.

        Args:
            force_refresh: Skip the TTL check and fetch from the directory.
        """
        if not force_refresh and self._is_fresh():
            assert self._data is not None
            return self._data

        if self._in_flight is None:
            self._in_flight = asyncio.ensure_future(self._fetch(self._generation))

        return await asyncio.shield(self._in_flight)

    async def _fetch(self, generation: int) -> tuple[PipelineTopology, ...]:
        try:
            topologies = tuple(await self._directory.list_pipelines_with_stages())
        finally:
            if generation == self._generation:
                self._in_flight = None

        if generation == self._generation:
            self._data = topologies
            self._fetched_at = self._clock()
            logger.debug("topology.refreshed", pipelines=len(topologies))
        else:
            logger.debug("topology.discarded_stale_fetch", generation=generation)
        return topologies

    async def get_pipeline(self, pipeline_id: str) -> PipelineTopology | None:
        return find_pipeline(await self.get_topology(), pipeline_id)

    def invalidate(self) -> None:
        """Drop the cached topology and detach any in-flight fetch."""
        self._generation += 1
        self._data = None
        self._fetched_at = 0.0
        self._in_flight = None
        logger.debug("topology.invalidated", generation=self._generation)
