"""Tests for the pipeline directory cache, board cache and session stores.

Covers:
- Topology TTL, forced refresh, concurrent-caller coalescing, invalidation
- Board cache tiers, TTLs, viewer-scoped key isolation, invalidation
- In-memory and Redis-backed session stores
"""

from __future__ import annotations

import asyncio
import fnmatch

import pytest

from src.kanban_sync.board.cache import BoardCache, cache_key
from src.kanban_sync.board.schemas import CacheTier, PipelineTopology, Stage
from src.kanban_sync.board.session import InMemorySessionStore, RedisSessionStore
from src.kanban_sync.board.store import PipelineDirectory
from src.kanban_sync.board.topology import TopologyCache


class GatedDirectory(PipelineDirectory):
    """Directory whose fetches block until released."""

    def __init__(self, topologies) -> None:
        self.topologies = list(topologies)
        self.calls = 0
        self.gate = asyncio.Event()
        self.gate.set()
        self.error: Exception | None = None

    async def list_pipelines_with_stages(self):
        self.calls += 1
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.topologies)


class FakeRedis:
    """The handful of redis.asyncio commands the session store uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match="*"):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key


# ── Pipeline directory cache ─────────────────────────────────────────────


class TestTopologyCache:
    """TTL, coalescing and invalidation."""

    @pytest.mark.asyncio
    async def test_serves_from_memory_within_ttl(self, topologies):
        directory = GatedDirectory(topologies)
        cache = TopologyCache(directory, ttl_seconds=300)

        first = await cache.get_topology()
        second = await cache.get_topology()

        assert first is second
        assert directory.calls == 1

    @pytest.mark.asyncio
    async def test_force_refresh_and_expiry(self, topologies):
        now = [0.0]
        directory = GatedDirectory(topologies)
        cache = TopologyCache(directory, ttl_seconds=300, clock=lambda: now[0])

        await cache.get_topology()
        await cache.get_topology(force_refresh=True)
        assert directory.calls == 2

        now[0] = 301.0
        await cache.get_topology()
        assert directory.calls == 3

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, topologies):
        directory = GatedDirectory(topologies)
        directory.gate.clear()
        cache = TopologyCache(directory)

        waiters = [asyncio.ensure_future(cache.get_topology()) for _ in range(5)]
        await asyncio.sleep(0)
        directory.gate.set()
        results = await asyncio.gather(*waiters)

        assert directory.calls == 1
        assert all(result == results[0] for result in results)

    @pytest.mark.asyncio
    async def test_fetch_started_before_invalidation_is_not_cached(self, topologies):
        directory = GatedDirectory(topologies)
        directory.gate.clear()
        cache = TopologyCache(directory)

        waiter = asyncio.ensure_future(cache.get_topology())
        await asyncio.sleep(0)
        cache.invalidate()
        directory.gate.set()
        await waiter

        assert cache.cached is None
        await cache.get_topology()
        assert directory.calls == 2

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_is_not_cached(self, topologies):
        directory = GatedDirectory(topologies)
        directory.error = RuntimeError("directory down")
        cache = TopologyCache(directory)

        with pytest.raises(RuntimeError, match="directory down"):
            await cache.get_topology()

        directory.error = None
        assert len(await cache.get_topology()) == len(topologies)

    @pytest.mark.asyncio
    async def test_get_pipeline(self, topologies):
        cache = TopologyCache(GatedDirectory(topologies))
        pipeline = await cache.get_pipeline("p-rec")
        assert pipeline.name == "Receptie"
        assert await cache.get_pipeline("p-missing") is None


class TestPipelineTopology:
    def test_stage_lookup(self):
        pipeline = PipelineTopology(
            id="p", name="Quality Check", stages=(Stage(id="a", name="Arhivat"),)
        )
        assert pipeline.slug == "quality-check"
        assert pipeline.stage_by_name("Arhivat").id == "a"
        assert pipeline.stage_by_name("arhivat") is None
        assert pipeline.stage_by_name_ci("ARHIVAT").id == "a"
        assert pipeline.stage_name("a") == "Arhivat"


# ── Board cache ──────────────────────────────────────────────────────────


class TestBoardCache:
    """Tiered per-(pipeline, viewer) cache."""

    @pytest.mark.asyncio
    async def test_memory_hit(self, item_factory):
        cache = BoardCache()
        items = [item_factory.lead("L1")]

        await cache.write("p-sales", None, items)
        entry = await cache.read("p-sales")

        assert entry.tier is CacheTier.MEMORY
        assert entry.items == tuple(items)

    @pytest.mark.asyncio
    async def test_session_tier_survives_restart(self, item_factory):
        """A fresh cache over the same session store reports a session hit."""
        session = InMemorySessionStore()
        await BoardCache(session_store=session).write("p-sales", None, [item_factory.lead("L1")])

        entry = await BoardCache(session_store=session).read("p-sales")

        assert entry.tier is CacheTier.SESSION
        assert entry.items[0].id == "L1"
        assert entry.items[0].stage_moved_at == item_factory.t0

    @pytest.mark.asyncio
    async def test_memory_ttl_falls_back_to_session(self, item_factory):
        now = [1000.0]
        cache = BoardCache(
            session_store=InMemorySessionStore(clock=lambda: now[0]),
            memory_ttl_seconds=300,
            session_ttl_seconds=900,
            clock=lambda: now[0],
        )
        await cache.write("p-sales", None, [item_factory.lead("L1")])

        now[0] += 301
        assert (await cache.read("p-sales")).tier is CacheTier.SESSION

        now[0] += 600
        assert await cache.read("p-sales") is None

    @pytest.mark.asyncio
    async def test_scoped_keys_isolate_viewers(self, item_factory):
        """Two viewers of a scoped pipeline never see each other's payload."""
        session = InMemorySessionStore()
        cache = BoardCache(session_store=session, scoped_pipeline_ids={"p-sal"})
        alice_items = [item_factory.tray("T-A")]
        bob_items = [item_factory.tray("T-B")]

        await cache.write("p-sal", "alice", alice_items)
        await cache.write("p-sal", "bob", bob_items)

        assert [i.id for i in (await cache.read("p-sal", "alice")).items] == ["T-A"]
        assert [i.id for i in (await cache.read("p-sal", "bob")).items] == ["T-B"]

        restarted = BoardCache(session_store=session, scoped_pipeline_ids={"p-sal"})
        assert [i.id for i in (await restarted.read("p-sal", "bob")).items] == ["T-B"]
        assert await restarted.read("p-sal", "carol") is None

    @pytest.mark.asyncio
    async def test_scoped_pipeline_requires_viewer(self, item_factory):
        cache = BoardCache()
        cache.mark_scoped("p-sal")

        with pytest.raises(ValueError, match="viewer-scoped"):
            await cache.read("p-sal")
        with pytest.raises(ValueError):
            await cache.write("p-sal", None, [item_factory.tray("T1")])

    @pytest.mark.asyncio
    async def test_invalidate_drops_all_viewers_of_one_pipeline(self, item_factory):
        session = InMemorySessionStore()
        cache = BoardCache(session_store=session)
        await cache.write("p-1", "alice", [item_factory.lead("A")])
        await cache.write("p-1", "bob", [item_factory.lead("B")])
        await cache.write("p-10", "alice", [item_factory.lead("C")])

        await cache.invalidate("p-1")

        assert await cache.read("p-1", "alice") is None
        assert await cache.read("p-1", "bob") is None
        assert (await cache.read("p-10", "alice")).items[0].id == "C"

    @pytest.mark.asyncio
    async def test_oversized_payload_skips_session_tier(self, item_factory):
        session = InMemorySessionStore()
        cache = BoardCache(session_store=session, max_session_bytes=10)

        await cache.write("p-sales", None, [item_factory.lead("L1")])

        assert (await cache.read("p-sales")).tier is CacheTier.MEMORY
        assert await session.get(cache_key("p-sales")) is None

    @pytest.mark.asyncio
    async def test_corrupt_session_entry_is_discarded(self):
        session = InMemorySessionStore()
        await session.set(cache_key("p-sales"), "{not valid", 60)

        assert await BoardCache(session_store=session).read("p-sales") is None
        assert await session.get(cache_key("p-sales")) is None

    def test_cache_key_components_are_quoted(self):
        assert cache_key("p:1", "a/b") == "kanban:p%3A1:a%2Fb"
        assert cache_key("p-1") == "kanban:p-1:all"


# ── Session stores ───────────────────────────────────────────────────────


class TestSessionStores:
    """Durable tier implementations."""

    @pytest.mark.asyncio
    async def test_in_memory_expiry(self):
        now = [0.0]
        store = InMemorySessionStore(clock=lambda: now[0])
        await store.set("k", "v", ttl_seconds=10)

        assert await store.get("k") == "v"
        now[0] = 10.0
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_in_memory_delete_prefix(self):
        store = InMemorySessionStore()
        await store.set("kanban:p-1:a", "1", 60)
        await store.set("kanban:p-1:b", "2", 60)
        await store.set("kanban:p-2:a", "3", 60)

        assert await store.delete_prefix("kanban:p-1:") == 2
        assert await store.get("kanban:p-2:a") == "3"

    @pytest.mark.asyncio
    async def test_redis_keys_are_session_prefixed(self):
        redis = FakeRedis()
        store = RedisSessionStore(redis, session_id="sess-1")

        await store.set("kanban:p-1:all", "payload", ttl_seconds=900)

        assert redis.data == {"s:sess-1:kanban:p-1:all": "payload"}
        assert redis.expiry["s:sess-1:kanban:p-1:all"] == 900
        assert await store.get("kanban:p-1:all") == "payload"

    @pytest.mark.asyncio
    async def test_redis_sessions_are_isolated(self):
        redis = FakeRedis()
        first = RedisSessionStore(redis, session_id="one")
        second = RedisSessionStore(redis, session_id="two")

        await first.set("k", "v", 60)

        assert await second.get("k") is None
        assert await second.delete_prefix("k") == 0
        assert await first.delete_prefix("k") == 1
        assert redis.data == {}
