"""BoardEngine: the synchronization engine for one viewed board.

Composes the pipeline directory cache, board cache, board state, optimistic
mutator, realtime reconciler, refresh coalescer and background sweeps.
Presentation code talks only to this facade: it reads ``items``, subscribes
for repaints and issues intents (move, tag patch, claim patch).

Caches are passed in rather than held in module globals so several boards of
one application session can share them; their lifecycle is the session's.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

import structlog

from src.kanban_sync.board.cache import BoardCache
from src.kanban_sync.board.mutator import OptimisticMutator, SelfMoveMarkers
from src.kanban_sync.board.rest import RestItemStore
from src.kanban_sync.board.schemas import (
    BoardItem,
    CacheTier,
    ItemKind,
    PipelineTopology,
    Tag,
    Viewer,
    find_pipeline_by_slug,
)
from src.kanban_sync.board.session import RedisSessionStore, SessionStore, get_redis_client
from src.kanban_sync.board.state import BoardState, Listener
from src.kanban_sync.board.store import BoardMaintenance, ItemStore, PipelineDirectory
from src.kanban_sync.board.topology import TopologyCache
from src.kanban_sync.config import Settings, get_settings
from src.kanban_sync.core.background import ThrottledTask
from src.kanban_sync.core.coalescer import RefreshCoalescer
from src.kanban_sync.core.errors import BoardSyncError, LoadTimeoutError
from src.kanban_sync.core.monitoring import track_reload
from src.kanban_sync.core.retry import RetryPolicy, with_retry
from src.kanban_sync.realtime.channel import NotificationChannel, RedisChannel
from src.kanban_sync.realtime.reconciler import RealtimeReconciler

logger = structlog.get_logger(__name__)


class BoardEngine:
    """Keeps one board's items consistent with the remote.

    Args:
        store: Remote item store.
        directory: Pipeline/stage topology source.
        pipeline_slug: Slug of the viewed board ("vanzari", "receptie", ...).
        viewer: Signed-in user; required for viewer-scoped pipelines.
        session_store: Durable tier of the board cache (ignored when
            ``board_cache`` is given).
        channel: Push notification channel; None disables realtime.
        maintenance: Target of the background sweeps on the sales board.
        settings: Engine settings; defaults to get_settings().
        topology: Shared pipeline directory cache.
        board_cache: Shared board cache.
    """

    def __init__(
        self,
        store: ItemStore,
        directory: PipelineDirectory,
        pipeline_slug: str,
        viewer: Viewer | None = None,
        session_store: SessionStore | None = None,
        channel: NotificationChannel | None = None,
        maintenance: BoardMaintenance | None = None,
        settings: Settings | None = None,
        topology: TopologyCache | None = None,
        board_cache: BoardCache | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings

        self.pipeline_slug = pipeline_slug
        self.viewer = viewer
        self._store = store
        self._channel = channel
        self._maintenance = maintenance

        self._topology = topology or TopologyCache(directory, ttl_seconds=s.TOPOLOGY_TTL_SECONDS)
        self._board_cache = board_cache or BoardCache(
            session_store=session_store,
            memory_ttl_seconds=s.BOARD_CACHE_MEMORY_TTL_SECONDS,
            session_ttl_seconds=s.BOARD_CACHE_SESSION_TTL_SECONDS,
            max_session_bytes=s.BOARD_CACHE_SESSION_MAX_BYTES,
        )
        self._policy = RetryPolicy(
            max_attempts=s.RETRY_MAX_ATTEMPTS,
            delay_ms=s.RETRY_DELAY_MS,
            backoff_multiplier=s.RETRY_BACKOFF_MULTIPLIER,
        )
        background_policy = RetryPolicy(
            max_attempts=s.BACKGROUND_RETRY_MAX_ATTEMPTS,
            delay_ms=s.BACKGROUND_RETRY_DELAY_MS,
            backoff_multiplier=s.RETRY_BACKOFF_MULTIPLIER,
        )

        self.state = BoardState()
        self.loading = False
        self.error: BaseException | None = None
        self.notice: str | None = None

        self._coalescer = RefreshCoalescer(self.reload, window_ms=s.REFRESH_DEBOUNCE_MS)
        self.markers = SelfMoveMarkers(window_ms=s.SELF_MOVE_WINDOW_MS)
        self.mutator = OptimisticMutator(
            state=self.state,
            store=store,
            topology=self._topology,
            board_cache=self._board_cache,
            markers=self.markers,
            policy=self._policy,
            archive_stage_markers=s.ARCHIVE_STAGE_MARKERS,
            request_refresh=self.request_refresh,
            on_notice=self._set_notice,
        )
        self.reconciler = RealtimeReconciler(
            state=self.state,
            store=store,
            topology=self._topology,
            board_cache=self._board_cache,
            markers=self.markers,
            request_refresh=self.request_refresh,
            reload=self.reload,
            policy=self._policy,
            reconnect_delay_ms=s.REALTIME_RECONNECT_DELAY_MS,
            reconnect_max_delay_ms=s.REALTIME_RECONNECT_MAX_DELAY_MS,
        )

        self._expiry_sweep = ThrottledTask(
            "expire_callbacks",
            self._expire_callbacks,
            min_interval_seconds=s.EXPIRY_SWEEP_MIN_INTERVAL_SECONDS,
            policy=background_policy,
            timeout_seconds=s.BACKGROUND_TASK_TIMEOUT_SECONDS,
        )
        self._archive_sweep = ThrottledTask(
            "archive_completed_leads",
            self._archive_completed_leads,
            policy=background_policy,
            timeout_seconds=s.BACKGROUND_TASK_TIMEOUT_SECONDS,
        )

        self._realtime_task: asyncio.Task[None] | None = None
        self._detached: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        pipeline_slug: str,
        viewer: Viewer | None,
        session_id: str,
        settings: Settings | None = None,
    ) -> BoardEngine:
        """Wire the engine to the REST backend and Redis."""
        settings = settings or get_settings()
        store = RestItemStore(
            settings.ITEM_STORE_URL,
            api_key=settings.ITEM_STORE_API_KEY,
            timeout_seconds=settings.ITEM_STORE_TIMEOUT_SECONDS,
        )
        redis_client = get_redis_client(settings.REDIS_URL)
        return cls(
            store,
            store,
            pipeline_slug,
            viewer=viewer,
            session_store=RedisSessionStore(redis_client, session_id),
            channel=RedisChannel(redis_client),
            maintenance=store,
            settings=settings,
        )

    # ── Read side ───────────────────────────────────────────────────────

    @property
    def items(self) -> tuple[BoardItem, ...]:
        return self.state.items

    @property
    def pipeline(self) -> PipelineTopology | None:
        return self.state.pipeline

    @property
    def topology(self) -> TopologyCache:
        return self._topology

    @property
    def board_cache(self) -> BoardCache:
        return self._board_cache

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.state.subscribe(listener)

    def dismiss_notice(self) -> None:
        self.notice = None

    def _set_notice(self, message: str) -> None:
        self.notice = message

    # ── Scoping ─────────────────────────────────────────────────────────

    def _is_scoped(self, pipeline: PipelineTopology) -> bool:
        return pipeline.slug in {slug.lower() for slug in self._settings.SCOPED_PIPELINE_SLUGS}

    def _cache_viewer_id(self, pipeline: PipelineTopology) -> str | None:
        if not self._is_scoped(pipeline):
            return None
        return self.viewer.id if self.viewer else None

    def _list_viewer_id(self, pipeline: PipelineTopology) -> str | None:
        """Viewer id the store should filter by; privileged roles see everything."""
        if not self._is_scoped(pipeline) or self.viewer is None:
            return None
        if self.viewer.role in self._settings.UNSCOPED_ROLES:
            return None
        return self.viewer.id

    def _configure_board(self, pipeline: PipelineTopology, topologies: Iterable[PipelineTopology]) -> None:
        topologies = tuple(topologies)
        self.state.set_pipeline(pipeline)
        if self._is_scoped(pipeline):
            self._board_cache.mark_scoped(pipeline.id)

        mirrored = []
        for slug in self._settings.MIRRORED_PIPELINE_SLUGS.get(pipeline.slug, []):
            source = find_pipeline_by_slug(topologies, slug)
            if source is not None:
                mirrored.append(source.id)
        self.reconciler.mirrored_pipeline_ids = frozenset(mirrored)

    # ── Loading ─────────────────────────────────────────────────────────

    async def load(self, force_refresh: bool = False) -> None:
        """Paint the board, from cache when possible.

        Never raises: failures (including the load timeout) are recorded in
        ``error`` so the UI can offer a manual retry.
        """
        self.loading = True
        self.error = None
        try:
            await asyncio.wait_for(self._load(force_refresh), timeout=self._settings.LOAD_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            self.error = LoadTimeoutError(
                f"Loading board '{self.pipeline_slug}' took longer than {self._settings.LOAD_TIMEOUT_SECONDS}s"
            )
            logger.error("engine.load_timeout", pipeline_slug=self.pipeline_slug)
        except Exception as exc:
            self.error = exc
            logger.error("engine.load_failed", pipeline_slug=self.pipeline_slug, error=str(exc))
        finally:
            self.loading = False

    async def _load(self, force_refresh: bool) -> None:
        topologies = await with_retry(
            lambda: self._topology.get_topology(force_refresh=force_refresh),
            self._policy,
        )
        pipeline = find_pipeline_by_slug(topologies, self.pipeline_slug)
        if pipeline is None:
            raise BoardSyncError(f"Pipeline '{self.pipeline_slug}' does not exist")
        self._configure_board(pipeline, topologies)

        if not force_refresh:
            entry = await self._board_cache.read(pipeline.id, self._cache_viewer_id(pipeline))
            if entry is not None:
                self.state.replace_all(entry.items)
                logger.debug("engine.painted_from_cache", pipeline_id=pipeline.id, tier=entry.tier.value)
                if entry.tier is CacheTier.SESSION:
                    # Durable entries may be arbitrarily old.
                    self._spawn(self.reload())
                self._after_paint(pipeline)
                return

        await self._fetch_items(pipeline)
        self._after_paint(pipeline)

    async def _fetch_items(self, pipeline: PipelineTopology) -> None:
        async with track_reload(pipeline.id):
            items = await with_retry(
                lambda: self._store.list_items(pipeline.id, self._list_viewer_id(pipeline)),
                self._policy,
            )
        self.state.replace_all(items)
        await self._board_cache.write(pipeline.id, self._cache_viewer_id(pipeline), items)
        logger.info("engine.board_loaded", pipeline_id=pipeline.id, items=len(items))

    async def reload(self) -> None:
        """Bypass the board cache and fetch everything again."""
        await self.load(force_refresh=True)

    async def refresh(self) -> None:
        """Manual refresh: drop the cached board, then reload."""
        if self.state.pipeline_id:
            await self._board_cache.invalidate(self.state.pipeline_id)
        await self.reload()

    def request_refresh(self) -> None:
        """Debounced reload; bursts collapse into one."""
        self._coalescer.request_refresh()

    async def on_online(self) -> None:
        """Connectivity came back: anything cached may have missed updates."""
        self._topology.invalidate()
        await self.refresh()

    # ── Intents ─────────────────────────────────────────────────────────

    async def move(self, item_id: str, target_stage_name: str) -> None:
        await self.mutator.move(item_id, target_stage_name)

    def patch_tags(self, item_id: str, tags: Iterable[Tag]) -> BoardItem | None:
        return self.mutator.patch_tags(item_id, tags)

    def patch_claim(self, item_id: str, claimed_by: str | None, claimed_by_name: str | None = None) -> BoardItem | None:
        return self.mutator.patch_claim(item_id, claimed_by, claimed_by_name)

    def place_item(self, item_id: str, stage_id: str, stage_name: str) -> BoardItem | None:
        return self.mutator.place_item(item_id, stage_id, stage_name)

    def add_item(self, item: BoardItem) -> bool:
        return self.mutator.add_item(item)

    # ── Background sweeps ───────────────────────────────────────────────

    def _after_paint(self, pipeline: PipelineTopology) -> None:
        if self._maintenance is None or pipeline.slug != self._settings.SALES_PIPELINE_SLUG:
            return
        self._expiry_sweep.maybe_start()
        self._archive_sweep.maybe_start()

    async def _expire_callbacks(self) -> None:
        assert self._maintenance is not None
        await self._maintenance.expire_callbacks()

    async def _archive_completed_leads(self) -> int:
        assert self._maintenance is not None
        lead_ids = [
            item.id
            for item in self.state.items
            if item.kind == ItemKind.LEAD and not self.mutator.is_archive_stage(item.stage_name)
        ]
        archived = await self._maintenance.archive_completed_leads(lead_ids)
        if archived:
            logger.info("engine.leads_archived", count=archived)
            self.request_refresh()
        return archived

    # ── Realtime lifecycle ──────────────────────────────────────────────

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return task

    def start(self) -> None:
        """Subscribe to push notifications for this board.

        Call after the first load: the topics depend on the resolved pipeline.
        """
        if self._channel is None or self.running:
            return
        self._realtime_task = asyncio.get_running_loop().create_task(self.reconciler.run(self._channel))
        logger.info("engine.realtime_started", pipeline_slug=self.pipeline_slug)

    @property
    def running(self) -> bool:
        return self._realtime_task is not None and not self._realtime_task.done()

    async def stop(self) -> None:
        """Tear down the subscription and drop scheduled work."""
        tasks = [task for task in (self._realtime_task, *self._detached) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._realtime_task = None
        self._coalescer.close()
        self._expiry_sweep.cancel()
        self._archive_sweep.cancel()
        logger.info("engine.stopped", pipeline_slug=self.pipeline_slug)
