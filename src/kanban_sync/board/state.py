"""In-memory board state: the item list the UI paints from.

The item list is an immutable tuple that is swapped wholesale on every
patch, so a reader holding the old tuple never observes a half-applied
change. All patch methods are synchronous: no await happens between reading
the current list and publishing the new one.

Only the engine (mutator and reconciler) writes here; presentation code
reads ``items`` and subscribes to changes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

import structlog

from src.kanban_sync.board.schemas import BoardItem, PipelineTopology

logger = structlog.get_logger(__name__)

Listener = Callable[[tuple[BoardItem, ...]], None]


class BoardState:
    """Items of one viewed board plus the topology they are rendered against."""

    def __init__(self) -> None:
        self._items: tuple[BoardItem, ...] = ()
        self._pipeline: PipelineTopology | None = None
        self._stage_names: dict[str, str] = {}
        self._listeners: list[Listener] = []

    # ── Read side ───────────────────────────────────────────────────────

    @property
    def items(self) -> tuple[BoardItem, ...]:
        return self._items

    @property
    def pipeline(self) -> PipelineTopology | None:
        return self._pipeline

    @property
    def pipeline_id(self) -> str | None:
        return self._pipeline.id if self._pipeline else None

    def stage_name_for(self, stage_id: str) -> str | None:
        """Stage name from the board's own topology, without a round trip."""
        return self._stage_names.get(stage_id)

    def get(self, item_id: str) -> BoardItem | None:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def __contains__(self, item_id: object) -> bool:
        return any(item.id == item_id for item in self._items)

    def __len__(self) -> int:
        return len(self._items)

    # ── Subscriptions ───────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a repaint callback. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, items: tuple[BoardItem, ...]) -> None:
        self._items = items
        for listener in list(self._listeners):
            try:
                listener(items)
            except Exception:
                logger.error("board_state.listener_failed", exc_info=True)

    # ── Write side (engine only) ────────────────────────────────────────

    def set_pipeline(self, pipeline: PipelineTopology | None) -> None:
        self._pipeline = pipeline
        self._stage_names = pipeline.stage_index() if pipeline else {}

    def replace_all(self, items: Iterable[BoardItem]) -> None:
        self._publish(tuple(items))

    def replace(self, item: BoardItem) -> bool:
        """Swap in ``item`` where an item with the same id sits.

        Returns:
            False when the item is not on the board (nothing published).
        """
        found = False
        updated: list[BoardItem] = []
        for current in self._items:
            if current.id == item.id:
                found = True
                updated.append(item)
            else:
                updated.append(current)
        if found:
            self._publish(tuple(updated))
        return found

    def patch(self, item_id: str, **fields) -> BoardItem | None:
        """Copy-on-write field update. Returns the new item, or None if absent."""
        current = self.get(item_id)
        if current is None:
            return None
        patched = current.model_copy(update=fields)
        self.replace(patched)
        return patched

    def append_if_absent(self, item: BoardItem) -> bool:
        if item.id in self:
            return False
        self._publish(self._items + (item,))
        return True

    def remove(self, item_id: str) -> bool:
        """Remove by id; removing an absent id is a no-op."""
        remaining = tuple(item for item in self._items if item.id != item_id)
        if len(remaining) == len(self._items):
            return False
        self._publish(remaining)
        return True
