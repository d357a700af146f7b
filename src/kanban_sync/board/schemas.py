"""Pydantic schemas for board items, pipeline topology and cache entries.

Defines all structured types the engine moves around:
- Enums: ItemKind, CacheTier
- Items: Tag, LeadItem, ServiceFileItem, TrayItem and the BoardItem union
- Topology: Stage, PipelineTopology
- Cache: CacheEntry
- Viewer: who is looking at the board (drives cache key scoping)

Items are frozen: every mutation produces a new instance via model_copy,
so a snapshot taken before an optimistic patch stays byte-for-byte intact.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ── Enums ───────────────────────────────────────────────────────────────────


class ItemKind(str, Enum):
    """The closed set of things that can sit on a board."""

    LEAD = "lead"
    SERVICE_FILE = "service_file"
    TRAY = "tray"


class CacheTier(str, Enum):
    """Where a board cache hit came from."""

    MEMORY = "memory"
    SESSION = "session"


# ── Items ───────────────────────────────────────────────────────────────────


class Tag(BaseModel):
    """A label attached to an item. Order within an item is irrelevant."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    color: str | None = None


class _ItemBase(BaseModel):
    """Envelope shared by every board item kind.

    ``stage_name`` duplicates ``stage_id`` but is what the UI renders, so both
    are always patched together.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    pipeline_id: str
    stage_id: str
    stage_name: str
    stage_moved_at: datetime | None = None
    # Set while stage_moved_at comes from this client's clock rather than the server.
    moved_at_is_local: bool = Field(default=False, exclude=True)
    tags: tuple[Tag, ...] = ()
    name: str = ""
    created_at: datetime | None = None

    def with_placement(
        self,
        stage_id: str,
        stage_name: str,
        *,
        pipeline_id: str | None = None,
        moved_at: datetime | None = None,
        local_clock: bool = False,
    ):
        """Return a copy placed in another stage (and optionally pipeline).

        ``local_clock`` flags ``moved_at`` as a client-side timestamp, which is
        not comparable with server timestamps.
        """
        update: dict = {"stage_id": stage_id, "stage_name": stage_name}
        if pipeline_id is not None:
            update["pipeline_id"] = pipeline_id
        if moved_at is not None:
            update["stage_moved_at"] = moved_at
            update["moved_at_is_local"] = local_clock
        return self.model_copy(update=update)

    def same_placement(self, stage_id: str, pipeline_id: str | None = None) -> bool:
        if pipeline_id is not None and pipeline_id != self.pipeline_id:
            return False
        return self.stage_id == stage_id


class LeadItem(_ItemBase):
    """A sales lead."""

    kind: Literal["lead"] = "lead"
    claimed_by: str | None = None
    claimed_by_name: str | None = None
    original_pipeline_id: str | None = None


class ServiceFileItem(_ItemBase):
    """A service file (work order) opened for a lead."""

    kind: Literal["service_file"] = "service_file"
    lead_id: str | None = None
    number: str | None = None


class TrayItem(_ItemBase):
    """A tray of instruments travelling through a department workshop."""

    kind: Literal["tray"] = "tray"
    service_file_id: str | None = None
    department: str | None = None
    technician_id: str | None = None


BoardItem = Annotated[
    Union[LeadItem, ServiceFileItem, TrayItem],
    Field(discriminator="kind"),
]

board_item_adapter: TypeAdapter[BoardItem] = TypeAdapter(BoardItem)
board_items_adapter: TypeAdapter[tuple[BoardItem, ...]] = TypeAdapter(tuple[BoardItem, ...])
tags_adapter: TypeAdapter[tuple[Tag, ...]] = TypeAdapter(tuple[Tag, ...])


# ── Topology ────────────────────────────────────────────────────────────────


def slugify(name: str) -> str:
    """Board URL slug for a pipeline name ("Quality Check" -> "quality-check")."""
    return re.sub(r"\s+", "-", str(name).strip().lower())


class Stage(BaseModel):
    """A named slot within a pipeline."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class PipelineTopology(BaseModel):
    """A pipeline and its ordered stage list."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    stages: tuple[Stage, ...] = ()

    @property
    def slug(self) -> str:
        return slugify(self.name)

    def stage_by_name(self, name: str) -> Stage | None:
        """Exact name match, as rendered on the board."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def stage_by_name_ci(self, name: str) -> Stage | None:
        lowered = (name or "").lower()
        for stage in self.stages:
            if stage.name.lower() == lowered:
                return stage
        return None

    def stage_name(self, stage_id: str) -> str | None:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage.name
        return None

    def stage_index(self) -> dict[str, str]:
        """Map stage id to stage name."""
        return {stage.id: stage.name for stage in self.stages}


topologies_adapter: TypeAdapter[tuple[PipelineTopology, ...]] = TypeAdapter(
    tuple[PipelineTopology, ...]
)


def find_pipeline(topologies: tuple[PipelineTopology, ...] | list[PipelineTopology], pipeline_id: str | None) -> PipelineTopology | None:
    if pipeline_id is None:
        return None
    for topology in topologies:
        if topology.id == pipeline_id:
            return topology
    return None


def find_pipeline_by_slug(topologies: tuple[PipelineTopology, ...] | list[PipelineTopology], slug: str) -> PipelineTopology | None:
    wanted = slugify(slug)
    for topology in topologies:
        if topology.slug == wanted:
            return topology
    return None


# ── Cache ───────────────────────────────────────────────────────────────────


class CacheEntry(BaseModel):
    """A materialized item list for one (pipeline, viewer) key."""

    model_config = ConfigDict(frozen=True)

    key: str
    items: tuple[BoardItem, ...]
    fetched_at: float
    tier: CacheTier = CacheTier.MEMORY


# ── Viewer ──────────────────────────────────────────────────────────────────


class Viewer(BaseModel):
    """The signed-in user looking at the board."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: str = "member"
    email: str | None = None
