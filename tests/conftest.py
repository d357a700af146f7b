"""Shared fixtures for board synchronization tests.

Provides:
- A three-pipeline topology (sales, reception, one scoped workshop)
- FakeStore: in-memory ItemStore + PipelineDirectory + BoardMaintenance
  with call recording, scripted failures and an optional move hook
- Item builders (make_lead, make_service_file, make_tray)
- ObservableChannel: in-memory push channel with subscriber counts and
  scripted connection drops
- Zero-delay retry policy and settings so tests never sleep on backoff
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from datetime import datetime, timezone

import pytest

from src.kanban_sync.board.cache import BoardCache
from src.kanban_sync.board.mutator import OptimisticMutator, SelfMoveMarkers
from src.kanban_sync.board.schemas import (
    BoardItem,
    ItemKind,
    LeadItem,
    PipelineTopology,
    ServiceFileItem,
    Stage,
    Tag,
    TrayItem,
    find_pipeline,
)
from src.kanban_sync.board.state import BoardState
from src.kanban_sync.board.store import BoardMaintenance, ItemStore, PipelineDirectory
from src.kanban_sync.board.topology import TopologyCache
from src.kanban_sync.config import Settings
from src.kanban_sync.core.errors import NotFoundInPipelineError
from src.kanban_sync.core.retry import RetryPolicy
from src.kanban_sync.realtime.channel import InMemoryChannel

SALES = PipelineTopology(
    id="p-sales",
    name="Vanzari",
    stages=(
        Stage(id="s-leaduri", name="Leaduri"),
        Stage(id="s-callback", name="CallBack"),
        Stage(id="s-arhivat", name="Arhivat"),
    ),
)
RECEPTION = PipelineTopology(
    id="p-rec",
    name="Receptie",
    stages=(
        Stage(id="r-noua", name="Noua"),
        Stage(id="r-lucru", name="In lucru"),
        Stage(id="r-arhivat", name="Arhivat"),
    ),
)
WORKSHOP = PipelineTopology(
    id="p-sal",
    name="Saloane",
    stages=(
        Stage(id="d-noua", name="Noua"),
        Stage(id="d-lucru", name="In lucru"),
        Stage(id="d-fin", name="Finalizata"),
    ),
)
TOPOLOGIES = (SALES, RECEPTION, WORKSHOP)

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _stage_name(pipeline_id: str, stage_id: str) -> str:
    pipeline = find_pipeline(TOPOLOGIES, pipeline_id)
    name = pipeline.stage_name(stage_id) if pipeline else None
    return name or stage_id


class FakeStore(ItemStore, PipelineDirectory, BoardMaintenance):
    """In-memory remote: items live where ``pipeline_id`` says they do."""

    def __init__(self, topologies: Sequence[PipelineTopology] = TOPOLOGIES, items: Sequence[BoardItem] = ()) -> None:
        self.topologies = list(topologies)
        self.items: dict[str, BoardItem] = {item.id: item for item in items}
        self.tags: dict[str, tuple[Tag, ...]] = {}
        self.tray_parents: dict[str, str] = {}
        self.visible_to: dict[str, str] = {}

        self.move_calls: list[tuple[str, str, str]] = []
        self.list_calls: list[tuple[str, str | None]] = []
        self.get_item_calls: list[tuple[str, str]] = []
        self.tag_calls: list[str] = []
        self.release_calls: list[str] = []
        self.pipeline_lookups: list[str] = []
        self.directory_calls = 0
        self.expire_calls = 0
        self.archive_calls: list[list[str]] = []

        self.move_errors: list[BaseException] = []
        self.list_errors: list[BaseException] = []
        self.release_error: BaseException | None = None
        self.get_item_error: BaseException | None = None
        self.move_hook: Callable[[str, str, str], Awaitable[None]] | None = None
        self.list_delay = 0.0
        self.archive_result = 0

    async def list_pipelines_with_stages(self) -> list[PipelineTopology]:
        self.directory_calls += 1
        await asyncio.sleep(0)
        return list(self.topologies)

    async def list_items(self, pipeline_id: str, viewer_id: str | None = None) -> list[BoardItem]:
        self.list_calls.append((pipeline_id, viewer_id))
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.list_errors:
            raise self.list_errors.pop(0)
        return [
            item
            for item in self.items.values()
            if item.pipeline_id == pipeline_id
            and (viewer_id is None or self.visible_to.get(item.id, viewer_id) == viewer_id)
        ]

    async def get_item(self, kind: ItemKind, item_id: str, pipeline_id: str) -> BoardItem | None:
        self.get_item_calls.append((item_id, pipeline_id))
        if self.get_item_error is not None:
            raise self.get_item_error
        item = self.items.get(item_id)
        if item is None or item.pipeline_id != pipeline_id:
            return None
        return item

    async def move_item(self, kind: ItemKind, item_id: str, pipeline_id: str, stage_id: str) -> None:
        self.move_calls.append((item_id, pipeline_id, stage_id))
        if self.move_hook is not None:
            await self.move_hook(item_id, pipeline_id, stage_id)
        if self.move_errors:
            raise self.move_errors.pop(0)
        item = self.items.get(item_id)
        if item is None or item.pipeline_id != pipeline_id:
            raise NotFoundInPipelineError()
        self.items[item_id] = item.with_placement(
            stage_id,
            _stage_name(pipeline_id, stage_id),
            moved_at=datetime.now(timezone.utc),
        )

    async def get_item_pipeline_id(self, kind: ItemKind, item_id: str) -> str | None:
        self.pipeline_lookups.append(item_id)
        item = self.items.get(item_id)
        return item.pipeline_id if item else None

    async def get_item_tags(self, kind: ItemKind, item_id: str) -> tuple[Tag, ...]:
        self.tag_calls.append(item_id)
        return self.tags.get(item_id, ())

    async def release_dependents(self, kind: ItemKind, item_id: str) -> None:
        self.release_calls.append(item_id)
        if self.release_error is not None:
            raise self.release_error

    async def get_tray_parent_id(self, tray_id: str) -> str | None:
        return self.tray_parents.get(tray_id)

    async def expire_callbacks(self) -> None:
        self.expire_calls += 1

    async def archive_completed_leads(self, lead_ids: Sequence[str]) -> int:
        self.archive_calls.append(list(lead_ids))
        return self.archive_result


def make_lead(item_id: str, stage_id: str = "s-leaduri", pipeline_id: str = "p-sales", **fields) -> LeadItem:
    fields.setdefault("stage_moved_at", T0)
    fields.setdefault("name", f"Lead {item_id}")
    return LeadItem(
        id=item_id,
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        stage_name=_stage_name(pipeline_id, stage_id),
        **fields,
    )


def make_service_file(item_id: str, stage_id: str = "r-noua", pipeline_id: str = "p-rec", **fields) -> ServiceFileItem:
    fields.setdefault("stage_moved_at", T0)
    return ServiceFileItem(
        id=item_id,
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        stage_name=_stage_name(pipeline_id, stage_id),
        **fields,
    )


def make_tray(item_id: str, stage_id: str = "d-noua", pipeline_id: str = "p-sal", **fields) -> TrayItem:
    fields.setdefault("stage_moved_at", T0)
    return TrayItem(
        id=item_id,
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        stage_name=_stage_name(pipeline_id, stage_id),
        **fields,
    )


class ObservableChannel(InMemoryChannel):
    """In-memory channel that exposes its subscribers and can drop connections.

    ``drops`` subscriptions fail with ConnectionError before yielding anything.
    """

    def __init__(self, drops: int = 0) -> None:
        super().__init__()
        self.drops = drops
        self.subscribe_calls = 0

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def publish_raw(self, topic: str, message: str) -> None:
        for queue in self._subscribers.get(topic, []):
            queue.put_nowait(message)

    async def subscribe(self, topics: Iterable[str]) -> AsyncIterator[str]:
        self.subscribe_calls += 1
        if self.drops:
            self.drops -= 1
            raise ConnectionError("connection to pub/sub lost")
        async for message in super().subscribe(topics):
            yield message


class BoardHarness:
    """A board wired like the engine wires it, with observable callbacks."""

    def __init__(self, store: FakeStore, pipeline: PipelineTopology, items: Sequence[BoardItem]) -> None:
        self.store = store
        self.state = BoardState()
        self.state.set_pipeline(pipeline)
        self.state.replace_all(items)
        self.topology = TopologyCache(store)
        self.board_cache = BoardCache()
        self.markers = SelfMoveMarkers(window_ms=2000)
        self.refresh_requests = 0
        self.reloads = 0
        self.notices: list[str] = []
        self.mutator = OptimisticMutator(
            state=self.state,
            store=store,
            topology=self.topology,
            board_cache=self.board_cache,
            markers=self.markers,
            policy=RetryPolicy(max_attempts=3, delay_ms=0),
            request_refresh=self.request_refresh,
            on_notice=self.notices.append,
        )

    def request_refresh(self) -> None:
        self.refresh_requests += 1

    async def reload(self) -> None:
        self.reloads += 1


@pytest.fixture
def topologies() -> tuple[PipelineTopology, ...]:
    return TOPOLOGIES


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def item_factory():
    """Builders for the three item kinds, with stage names derived from ids."""

    class _Factory:
        lead = staticmethod(make_lead)
        service_file = staticmethod(make_service_file)
        tray = staticmethod(make_tray)
        t0 = T0

    return _Factory


@pytest.fixture
def make_board(fake_store):
    """Build a BoardHarness over ``fake_store``; items are seeded remotely too."""

    def _build(items: Sequence[BoardItem] = (), pipeline: PipelineTopology = SALES) -> BoardHarness:
        for item in items:
            fake_store.items.setdefault(item.id, item)
        return BoardHarness(fake_store, pipeline, items)

    return _build


@pytest.fixture
def pipelines():
    """The fixture pipelines by role."""

    class _Pipelines:
        sales = SALES
        reception = RECEPTION
        workshop = WORKSHOP

    return _Pipelines


@pytest.fixture
def channel() -> ObservableChannel:
    return ObservableChannel()


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with zero backoff and short windows."""
    return Settings(
        RETRY_DELAY_MS=0,
        BACKGROUND_RETRY_DELAY_MS=0,
        REFRESH_DEBOUNCE_MS=10,
        REALTIME_RECONNECT_DELAY_MS=0,
        LOAD_TIMEOUT_SECONDS=2.0,
        BACKGROUND_TASK_TIMEOUT_SECONDS=2.0,
        SCOPED_PIPELINE_SLUGS=["saloane"],
        MIRRORED_PIPELINE_SLUGS={"receptie": ["saloane"]},
    )
