"""Realtime reconciler: merges push notifications into the board state.

Notifications are handled one at a time in arrival order. Each kind of
event gets the cheapest correct treatment:

- Placement update: dropped when it echoes our own recent move or is older
  than the local placement; patched in place when the stage id is known
  from the board's topology; otherwise the single item is re-fetched.
- Insert: single-item fetch, appended only if absent.
- Delete: unconditional remove by id.
- Tag change: only the tag set is re-fetched.
- Structural change: topology and board cache are invalidated and the board
  is fully reloaded.

handle() never raises for a bad notification: parse or fetch failures
degrade to a debounced full refresh so one bad event cannot end the
subscription.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from src.kanban_sync.board.cache import BoardCache
from src.kanban_sync.board.mutator import SelfMoveMarkers
from src.kanban_sync.board.schemas import BoardItem, ItemKind
from src.kanban_sync.board.state import BoardState
from src.kanban_sync.board.store import ItemStore
from src.kanban_sync.board.topology import TopologyCache
from src.kanban_sync.core.errors import MalformedNotificationError
from src.kanban_sync.core.monitoring import realtime_notifications_total, realtime_reconnects_total
from src.kanban_sync.core.retry import RetryPolicy, with_retry
from src.kanban_sync.realtime.channel import NotificationChannel
from src.kanban_sync.realtime.events import (
    STRUCTURE_TOPIC,
    TAGS_TOPIC,
    ItemChanged,
    ItemDeleted,
    ItemInserted,
    Notification,
    PlacementUpdate,
    StructuralChange,
    TagsChanged,
    parse_notification,
    pipeline_topic,
)

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _log_subscription_drop(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "realtime.subscription_dropped",
        attempt=retry_state.attempt_number,
        delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc),
    )


class RealtimeReconciler:
    """Applies other users' (and other tabs') changes to the local board.

    Args:
        state: Board state to patch.
        store: Remote item store for single-item and tag re-fetches.
        topology: Pipeline directory cache (invalidated on structural change).
        board_cache: Board cache (invalidated on structural change).
        markers: Self-move markers written by the mutator.
        request_refresh: Debounced full refresh (coalescer entry point).
        reload: Immediate forced full reload.
        mirrored_pipeline_ids: Pipelines whose tray moves are reflected on
            this board's service-file cards.
        policy: Retry policy for re-fetches.
        reconnect_delay_ms: First delay before re-opening a dropped subscription.
        reconnect_max_delay_ms: Cap on the reconnect backoff.
    """

    def __init__(
        self,
        state: BoardState,
        store: ItemStore,
        topology: TopologyCache,
        board_cache: BoardCache,
        markers: SelfMoveMarkers,
        request_refresh: Callable[[], None],
        reload: Callable[[], Awaitable[Any]],
        mirrored_pipeline_ids: Iterable[str] = (),
        policy: RetryPolicy | None = None,
        reconnect_delay_ms: int = 1000,
        reconnect_max_delay_ms: int = 30_000,
    ) -> None:
        self._state = state
        self._store = store
        self._topology = topology
        self._board_cache = board_cache
        self._markers = markers
        self._request_refresh = request_refresh
        self._reload = reload
        self.mirrored_pipeline_ids = frozenset(mirrored_pipeline_ids)
        self._policy = policy or RetryPolicy()
        self._reconnect_delay = reconnect_delay_ms / 1000
        self._reconnect_max_delay = reconnect_max_delay_ms / 1000

    def topics(self) -> list[str]:
        """Topics this board must listen to."""
        topics = []
        if self._state.pipeline_id:
            topics.append(pipeline_topic(self._state.pipeline_id))
        topics.extend(pipeline_topic(pid) for pid in sorted(self.mirrored_pipeline_ids))
        topics.extend([STRUCTURE_TOPIC, TAGS_TOPIC])
        return topics

    async def run(self, channel: NotificationChannel) -> None:
        """Consume ``channel`` until cancelled.

        A dropped subscription is re-opened with capped exponential backoff,
        and a refresh is requested on every reconnect because notifications
        published while disconnected are lost.
        """
        topics = self.topics()
        retrying = AsyncRetrying(
            wait=wait_exponential(multiplier=self._reconnect_delay, min=0, max=self._reconnect_max_delay),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_subscription_drop,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    realtime_reconnects_total.inc()
                    self._request_refresh()
                logger.info("realtime.subscribed", topics=topics, attempt=attempt.retry_state.attempt_number)
                async for raw in channel.subscribe(topics):
                    await self.handle(raw)

    async def handle(self, raw: str | bytes | dict[str, Any] | Notification) -> str:
        """Reconcile one notification.

        Returns:
            The action taken (``patched``, ``suppressed``, ``refreshed`` ...),
            mainly for logging and tests.
        """
        if isinstance(raw, (str, bytes, dict)):
            try:
                notification = parse_notification(raw)
            except MalformedNotificationError as exc:
                logger.warning("realtime.malformed_notification", error=str(exc))
                realtime_notifications_total.labels(event_type="unknown", action="refresh").inc()
                self._request_refresh()
                return "refresh"
        else:
            notification = raw

        try:
            action = await self._dispatch(notification)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "realtime.reconcile_failed",
                event_type=notification.type,
                error=str(exc),
            )
            action = "refresh"
            self._request_refresh()

        realtime_notifications_total.labels(event_type=notification.type, action=action).inc()
        logger.debug("realtime.handled", event_type=notification.type, action=action)
        return action

    async def _dispatch(self, notification: Notification) -> str:
        if isinstance(notification, PlacementUpdate):
            return await self._on_placement(notification)
        if isinstance(notification, ItemInserted):
            return await self._on_insert(notification)
        if isinstance(notification, ItemDeleted):
            return self._on_delete(notification)
        if isinstance(notification, TagsChanged):
            return await self._on_tags(notification)
        if isinstance(notification, ItemChanged):
            return await self._on_item_changed(notification)
        if isinstance(notification, StructuralChange):
            return await self._on_structural(notification)
        raise MalformedNotificationError(f"Unhandled notification type {type(notification).__name__}")

    # ── Placement ───────────────────────────────────────────────────────

    async def _on_placement(self, event: PlacementUpdate) -> str:
        board_id = self._state.pipeline_id
        if event.pipeline_id != board_id:
            if event.pipeline_id in self.mirrored_pipeline_ids and event.kind == ItemKind.TRAY:
                return await self._mirror_tray_placement(event)
            return "ignored"

        if self._markers.is_recent(event.item_id):
            return "suppressed"

        item = self._state.get(event.item_id)
        if item is None:
            # Moved into this pipeline from elsewhere.
            return await self._fetch_and_append(event.kind, event.item_id)

        if (
            event.moved_at is not None
            and item.stage_moved_at is not None
            and not item.moved_at_is_local
            and _as_utc(event.moved_at) < _as_utc(item.stage_moved_at)
        ):
            logger.debug("realtime.placement_out_of_order", item_id=item.id)
            return "stale"

        stage_name = self._state.stage_name_for(event.stage_id)
        if stage_name is None:
            return await self._refetch(item)

        if item.same_placement(event.stage_id, event.pipeline_id):
            return "duplicate"

        self._state.replace(
            item.with_placement(
                event.stage_id,
                stage_name,
                pipeline_id=event.pipeline_id,
                moved_at=event.moved_at or datetime.now(timezone.utc),
                local_clock=event.moved_at is None,
            )
        )
        logger.info("realtime.placement_patched", item_id=item.id, stage=stage_name)
        return "patched"

    async def _mirror_tray_placement(self, event: PlacementUpdate) -> str:
        parent_id = await with_retry(lambda: self._store.get_tray_parent_id(event.item_id), self._policy)
        card = self._state.get(parent_id) if parent_id else None
        if card is None:
            return "ignored"

        source = await self._topology.get_pipeline(event.pipeline_id)
        source_stage = source.stage_name(event.stage_id) if source else None
        board = self._state.pipeline
        target = board.stage_by_name_ci(source_stage) if board and source_stage else None
        if target is None:
            # The card's derived stage has no direct counterpart here.
            self._request_refresh()
            return "refresh"
        if card.same_placement(target.id):
            return "duplicate"

        self._state.replace(card.with_placement(target.id, target.name, moved_at=event.moved_at))
        logger.info("realtime.mirrored_placement_patched", item_id=card.id, tray_id=event.item_id, stage=target.name)
        return "patched"

    async def _refetch(self, item: BoardItem) -> str:
        board_id = self._state.pipeline_id
        fetched = await with_retry(
            lambda: self._store.get_item(ItemKind(item.kind), item.id, board_id),
            self._policy,
        )
        if fetched is None:
            self._state.remove(item.id)
            if board_id:
                await self._board_cache.invalidate(board_id)
            self._request_refresh()
            return "removed"
        self._state.replace(fetched)
        return "refetched"

    # ── Insert / delete ─────────────────────────────────────────────────

    async def _on_insert(self, event: ItemInserted) -> str:
        if event.pipeline_id != self._state.pipeline_id:
            return "ignored"
        if event.item_id in self._state:
            return "duplicate"
        return await self._fetch_and_append(event.kind, event.item_id)

    async def _fetch_and_append(self, kind: ItemKind, item_id: str) -> str:
        board_id = self._state.pipeline_id
        fetched = await with_retry(lambda: self._store.get_item(kind, item_id, board_id), self._policy)
        if fetched is None:
            return "ignored"
        if self._state.append_if_absent(fetched):
            logger.info("realtime.item_inserted", item_id=item_id, kind=ItemKind(kind).value)
            return "inserted"
        return "duplicate"

    def _on_delete(self, event: ItemDeleted) -> str:
        if event.pipeline_id is not None and event.pipeline_id != self._state.pipeline_id:
            return "ignored"
        return "removed" if self._state.remove(event.item_id) else "duplicate"

    # ── Tags / row changes ──────────────────────────────────────────────

    async def _on_tags(self, event: TagsChanged) -> str:
        if event.item_id is None:
            self._request_refresh()
            return "refresh"
        item = self._state.get(event.item_id)
        if item is None:
            return "ignored"
        kind = event.kind or ItemKind(item.kind)
        tags = await with_retry(lambda: self._store.get_item_tags(kind, item.id), self._policy)
        self._state.patch(item.id, tags=tuple(tags))
        return "patched"

    async def _on_item_changed(self, event: ItemChanged) -> str:
        item = self._state.get(event.item_id)
        if item is None:
            return "ignored"
        return await self._refetch(item)

    # ── Structure ───────────────────────────────────────────────────────

    async def _on_structural(self, event: StructuralChange) -> str:
        self._topology.invalidate()
        pipeline_ids = {pid for pid in (self._state.pipeline_id, event.pipeline_id) if pid}
        for pipeline_id in pipeline_ids:
            await self._board_cache.invalidate(pipeline_id)
        logger.info("realtime.structural_change", table=event.table, pipeline_id=event.pipeline_id)
        await self._reload()
        return "reloaded"
