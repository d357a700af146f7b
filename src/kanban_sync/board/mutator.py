"""Optimistic mutator: the single write gateway for board items.

UI code issues intents (move, tag patch, claim patch); only this module
patches items on their behalf. A move is applied locally before the remote
call starts, then confirmed or rolled back:

1. Resolve the item's effective pipeline. Service files and trays can be
   surfaced on a board other than their home pipeline, so for them the
   board being viewed wins over the pipeline id remembered on the card.
2. Resolve the target stage by exact name in that pipeline's topology;
   an unknown name is a no-op (stale stage-name UI state).
3. Patch the item locally, synchronously.
4. Record a self-move marker so the reconciler can drop the push echo.
5. Call the remote. On "not found in the specified pipeline", retry against
   the viewed board, then against the pipeline the backend reports the item
   really lives in, re-deriving the stage id from each pipeline's topology.
6. Run the archive side effect when the target is a terminal archive stage;
   if it fails, move the item back remotely and restore local state.
7. On terminal failure restore local state and invalidate the board cache.

Moves on the same item never interleave at the remote: each item keeps a
chain of pending moves over the last confirmed state, and the chain's lock
lets one remote call run at a time in call order, so the latest intent is
always the last write the server sees. A later move still patches locally at
once. A failed move only changes what the UI shows when it is the latest
intent; otherwise the newer in-flight patch stays.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from src.kanban_sync.board.cache import BoardCache
from src.kanban_sync.board.schemas import (
    BoardItem,
    ItemKind,
    PipelineTopology,
    Stage,
    Tag,
    find_pipeline,
)
from src.kanban_sync.board.state import BoardState
from src.kanban_sync.board.store import ItemStore
from src.kanban_sync.board.topology import TopologyCache
from src.kanban_sync.core.errors import (
    RemoteRejectedError,
    SideEffectError,
    is_not_found_in_pipeline,
)
from src.kanban_sync.core.monitoring import board_move_fallbacks_total, board_moves_total
from src.kanban_sync.core.retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)

STALE_MOVE_NOTICE = (
    "The item is no longer in this pipeline or was updated in another tab. "
    "The board has been refreshed."
)


class SelfMoveMarkers:
    """Short-lived record of items this client just moved.

    The push echo of our own move carries nothing newer than the optimistic
    patch, so the reconciler drops placement updates for marked items. The
    window is a tunable heuristic, not a correctness bound.

    Args:
        window_ms: How long a marker suppresses echoes.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(self, window_ms: int = 2000, clock: Callable[[], float] = time.monotonic) -> None:
        self._window = window_ms / 1000
        self._clock = clock
        self._marks: dict[str, float] = {}

    def mark(self, item_id: str) -> None:
        self._prune()
        self._marks[item_id] = self._clock()

    def is_recent(self, item_id: str) -> bool:
        marked_at = self._marks.get(item_id)
        if marked_at is None:
            return False
        if self._clock() - marked_at < self._window:
            return True
        del self._marks[item_id]
        return False

    def _prune(self) -> None:
        now = self._clock()
        for item_id in [k for k, t in self._marks.items() if now - t >= self._window]:
            del self._marks[item_id]


@dataclass(eq=False)
class _PendingMove:
    before: BoardItem
    optimistic: BoardItem


@dataclass
class _MoveChain:
    """Pending moves of one item on top of its last confirmed state."""

    confirmed: BoardItem
    moves: list[_PendingMove] = field(default_factory=list)
    remote_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class OptimisticMutator:
    """Applies user intents locally first and reconciles with the remote.

    Args:
        state: The board's item state (only writer besides the reconciler).
        store: Remote item store.
        topology: Pipeline directory cache.
        board_cache: Cache to invalidate when local state proves wrong.
        markers: Self-move markers shared with the reconciler.
        policy: Retry policy for remote calls made during a move.
        archive_stage_markers: Lower-case substrings of terminal archive stages.
        request_refresh: Called when a full reload is needed.
        on_notice: Receives soft (non-failure) messages for the user.
    """

    def __init__(
        self,
        state: BoardState,
        store: ItemStore,
        topology: TopologyCache,
        board_cache: BoardCache,
        markers: SelfMoveMarkers,
        policy: RetryPolicy | None = None,
        archive_stage_markers: Iterable[str] = ("arhivat", "arhiva", "archive"),
        request_refresh: Callable[[], None] | None = None,
        on_notice: Callable[[str], None] | None = None,
    ) -> None:
        self._state = state
        self._store = store
        self._topology = topology
        self._board_cache = board_cache
        self._markers = markers
        self._policy = policy or RetryPolicy()
        self._archive_markers = tuple(m.lower() for m in archive_stage_markers)
        self._request_refresh = request_refresh or (lambda: None)
        self._on_notice = on_notice or (lambda message: None)
        self._chains: dict[str, _MoveChain] = {}

    # ── Move ────────────────────────────────────────────────────────────

    async def move(self, item_id: str, target_stage_name: str) -> None:
        """Move an item to the stage named ``target_stage_name``.

        Raises:
            RemoteRejectedError: The remote refused the move (state rolled back).
            SideEffectError: The archive side effect failed (move reverted).
            TransientRemoteError: Retries exhausted (state rolled back).
        """
        item = self._state.get(item_id)
        if item is None:
            logger.warning("mutator.move_unknown_item", item_id=item_id)
            return
        if item.stage_name == target_stage_name:
            return

        topologies = await self._topology.get_topology()

        # Re-read after the suspension point: an earlier move may have patched it.
        item = self._state.get(item_id)
        if item is None or item.stage_name == target_stage_name:
            return

        kind = ItemKind(item.kind)
        pipeline = self._resolve_pipeline(item, topologies)
        if pipeline is None:
            logger.warning("mutator.move_unknown_pipeline", item_id=item_id, pipeline_id=item.pipeline_id)
            return
        stage = pipeline.stage_by_name(target_stage_name)
        if stage is None:
            logger.info("mutator.move_unknown_stage", item_id=item_id, stage=target_stage_name, pipeline_id=pipeline.id)
            return

        optimistic = item.with_placement(
            stage.id, stage.name, moved_at=datetime.now(timezone.utc), local_clock=True
        )
        chain, pending = self._begin(item, optimistic)
        self._state.replace(optimistic)
        self._markers.mark(item_id)

        logger.debug(
            "mutator.move_started",
            item_id=item_id,
            kind=kind.value,
            from_stage=item.stage_name,
            to_stage=stage.name,
            pipeline_id=pipeline.id,
        )

        async with chain.remote_lock:
            await self._confirm(kind, item_id, pending, pipeline, stage, topologies)

    async def _confirm(
        self,
        kind: ItemKind,
        item_id: str,
        pending: _PendingMove,
        pipeline: PipelineTopology,
        stage: Stage,
        topologies: tuple[PipelineTopology, ...],
    ) -> None:
        try:
            used_pipeline, used_stage = await self._move_remote(kind, item_id, pipeline, stage, topologies)
        except Exception as exc:
            self._finish(item_id, pending, succeeded=False)
            if is_not_found_in_pipeline(exc):
                await self._handle_stale(item_id, exc)
                board_moves_total.labels(pipeline_id=pipeline.id, outcome="stale").inc()
                return
            await self._invalidate_board()
            board_moves_total.labels(pipeline_id=pipeline.id, outcome="failed").inc()
            logger.error("mutator.move_failed", item_id=item_id, to_stage=stage.name, error=str(exc))
            raise

        if kind is ItemKind.SERVICE_FILE and self.is_archive_stage(used_stage.name):
            await self._run_archive_side_effect(kind, item_id, pending, used_pipeline)

        self._finish(item_id, pending, succeeded=True, pipeline=used_pipeline, stage=used_stage)
        self._markers.mark(item_id)
        board_moves_total.labels(pipeline_id=used_pipeline.id, outcome="success").inc()
        logger.info("mutator.move_confirmed", item_id=item_id, stage=used_stage.name, pipeline_id=used_pipeline.id)

    def _resolve_pipeline(self, item: BoardItem, topologies: tuple[PipelineTopology, ...]) -> PipelineTopology | None:
        board_id = self._state.pipeline_id
        if item.kind in (ItemKind.SERVICE_FILE, ItemKind.TRAY):
            candidates = [board_id, item.pipeline_id]
        else:
            candidates = [getattr(item, "original_pipeline_id", None), item.pipeline_id, board_id]
        for candidate in candidates:
            pipeline = find_pipeline(topologies, candidate)
            if pipeline is not None:
                return pipeline
        return None

    async def _move_remote(
        self,
        kind: ItemKind,
        item_id: str,
        pipeline: PipelineTopology,
        stage: Stage,
        topologies: tuple[PipelineTopology, ...],
    ) -> tuple[PipelineTopology, Stage]:
        """Issue the move, following not-found fallbacks. Returns where it landed."""
        tried: list[str] = []

        async def attempt(target: PipelineTopology, target_stage: Stage) -> tuple[PipelineTopology, Stage]:
            tried.append(target.id)
            await with_retry(
                lambda: self._store.move_item(kind, item_id, target.id, target_stage.id),
                self._policy,
            )
            return target, target_stage

        try:
            return await attempt(pipeline, stage)
        except RemoteRejectedError as exc:
            if not is_not_found_in_pipeline(exc):
                raise
            last_error: RemoteRejectedError = exc

        # Fallback 1: the board being viewed.
        board = find_pipeline(topologies, self._state.pipeline_id)
        if board is not None and board.id not in tried:
            board_stage = board.stage_by_name(stage.name)
            if board_stage is not None:
                board_move_fallbacks_total.labels(strategy="viewed_board").inc()
                try:
                    return await attempt(board, board_stage)
                except RemoteRejectedError as exc:
                    if not is_not_found_in_pipeline(exc):
                        raise
                    last_error = exc

        # Fallback 2: the pipeline the backend says the item lives in.
        actual_id = await with_retry(lambda: self._store.get_item_pipeline_id(kind, item_id), self._policy)
        if actual_id and actual_id not in tried:
            actual = find_pipeline(topologies, actual_id)
            if actual is None:
                actual = find_pipeline(await self._topology.get_topology(force_refresh=True), actual_id)
            actual_stage = actual.stage_by_name(stage.name) if actual else None
            if actual is not None and actual_stage is not None:
                board_move_fallbacks_total.labels(strategy="resolved_pipeline").inc()
                logger.info("mutator.move_rerouted", item_id=item_id, pipeline_id=actual_id)
                return await attempt(actual, actual_stage)

        raise last_error

    def is_archive_stage(self, stage_name: str) -> bool:
        lowered = (stage_name or "").lower()
        return any(marker in lowered for marker in self._archive_markers)

    async def _run_archive_side_effect(
        self,
        kind: ItemKind,
        item_id: str,
        pending: _PendingMove,
        pipeline: PipelineTopology,
    ) -> None:
        try:
            await with_retry(lambda: self._store.release_dependents(kind, item_id), self._policy)
        except Exception as exc:
            logger.error("mutator.archive_release_failed", item_id=item_id, error=str(exc))
            previous = pipeline.stage_by_name_ci(pending.before.stage_name)
            if previous is not None:
                try:
                    await with_retry(
                        lambda: self._store.move_item(kind, item_id, pipeline.id, previous.id),
                        self._policy,
                    )
                except Exception as revert_exc:
                    logger.error("mutator.archive_revert_failed", item_id=item_id, error=str(revert_exc))
            self._finish(item_id, pending, succeeded=False)
            await self._invalidate_board()
            self._request_refresh()
            board_moves_total.labels(pipeline_id=pipeline.id, outcome="side_effect_failed").inc()
            raise SideEffectError(
                f"Archiving could not be completed for '{item_id}': {exc}"
            ) from exc

    async def _handle_stale(self, item_id: str, exc: BaseException) -> None:
        logger.warning("mutator.move_stale", item_id=item_id, error=str(exc))
        self._topology.invalidate()
        await self._invalidate_board()
        self._on_notice(STALE_MOVE_NOTICE)
        self._request_refresh()

    async def _invalidate_board(self) -> None:
        if self._state.pipeline_id:
            await self._board_cache.invalidate(self._state.pipeline_id)

    # ── Pending move chain ──────────────────────────────────────────────

    def _begin(self, item: BoardItem, optimistic: BoardItem) -> tuple[_MoveChain, _PendingMove]:
        pending = _PendingMove(before=item, optimistic=optimistic)
        chain = self._chains.get(item.id)
        if chain is None:
            chain = self._chains[item.id] = _MoveChain(confirmed=item)
        chain.moves.append(pending)
        return chain, pending

    def _finish(
        self,
        item_id: str,
        pending: _PendingMove,
        succeeded: bool,
        pipeline: PipelineTopology | None = None,
        stage: Stage | None = None,
    ) -> None:
        chain = self._chains.get(item_id)
        if chain is None or pending not in chain.moves:
            return
        index = chain.moves.index(pending)
        was_latest = index == len(chain.moves) - 1

        if succeeded:
            result = pending.optimistic
            if pipeline is not None and stage is not None and not result.same_placement(stage.id, pipeline.id):
                result = result.with_placement(stage.id, stage.name, pipeline_id=pipeline.id)
            chain.confirmed = result
            del chain.moves[: index + 1]
            current = self._state.get(item_id)
            if was_latest and current is not None and not current.same_placement(result.stage_id, result.pipeline_id):
                # A reload landed mid-flight and painted the pre-move placement.
                self._state.replace(
                    current.with_placement(
                        result.stage_id,
                        result.stage_name,
                        pipeline_id=result.pipeline_id,
                        moved_at=result.stage_moved_at,
                        local_clock=result.moved_at_is_local,
                    )
                )
        else:
            del chain.moves[index]
            if was_latest:
                visible = chain.moves[-1].optimistic if chain.moves else chain.confirmed
                self._state.replace(visible)

        if not chain.moves:
            del self._chains[item_id]

    def has_pending_move(self, item_id: str) -> bool:
        return item_id in self._chains

    # ── Field patches ───────────────────────────────────────────────────

    def patch_tags(self, item_id: str, tags: Iterable[Tag]) -> BoardItem | None:
        """Replace an item's tag set locally."""
        return self._state.patch(item_id, tags=tuple(tags))

    def patch_claim(self, item_id: str, claimed_by: str | None, claimed_by_name: str | None = None) -> BoardItem | None:
        """Set or clear who claimed a lead."""
        item = self._state.get(item_id)
        if item is None or item.kind != ItemKind.LEAD:
            return None
        return self._state.patch(item_id, claimed_by=claimed_by, claimed_by_name=claimed_by_name)

    def place_item(self, item_id: str, stage_id: str, stage_name: str) -> BoardItem | None:
        """Reflect a move performed elsewhere (detail sheet, dialog) on the card.

        Records a self-move marker so the push echo is not applied twice.
        """
        item = self._state.get(item_id)
        if item is None:
            return None
        self._markers.mark(item_id)
        placed = item.with_placement(stage_id, stage_name, moved_at=datetime.now(timezone.utc), local_clock=True)
        self._state.replace(placed)
        return placed

    def add_item(self, item: BoardItem) -> bool:
        """Show a freshly created item immediately; duplicates are ignored."""
        return self._state.append_if_absent(item)


__all__ = [
    "OptimisticMutator",
    "STALE_MOVE_NOTICE",
    "SelfMoveMarkers",
]
