"""Collaborator interfaces the engine consumes.

Every remote backend (the REST item store, in-memory fakes in tests)
implements these ABCs. The engine treats them as opaque remotes: it only
relies on the methods below and on the error taxonomy in core.errors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from src.kanban_sync.board.schemas import BoardItem, ItemKind, PipelineTopology, Tag


class ItemStore(ABC):
    """Authoritative remote item data.

    Methods:
        list_items: Materialized item list for a pipeline (viewer-scoped when given).
        get_item: Full representation of a single item as placed in a pipeline.
        move_item: Place an item in a stage of a pipeline.
        get_item_pipeline_id: Resolve the pipeline an item actually lives in.
        get_item_tags: Current tag set of an item.
        release_dependents: Archive side effect (frees the trays of a service file).
        get_tray_parent_id: Service file that owns a tray.

    Errors:
        Transport failures raise TransientRemoteError (or an httpx transport
        error); semantic refusals raise RemoteRejectedError, with
        NotFoundInPipelineError for "not found in the specified pipeline".
    """

    @abstractmethod
    async def list_items(self, pipeline_id: str, viewer_id: str | None = None) -> list[BoardItem]:
        """List every item placed in ``pipeline_id``."""
        ...

    @abstractmethod
    async def get_item(self, kind: ItemKind, item_id: str, pipeline_id: str) -> BoardItem | None:
        """Fetch one item as shown on ``pipeline_id``; None if not placed there."""
        ...

    @abstractmethod
    async def move_item(self, kind: ItemKind, item_id: str, pipeline_id: str, stage_id: str) -> None:
        """Move an item to ``stage_id`` within ``pipeline_id``."""
        ...

    @abstractmethod
    async def get_item_pipeline_id(self, kind: ItemKind, item_id: str) -> str | None:
        """Resolve the item's true current pipeline id."""
        ...

    @abstractmethod
    async def get_item_tags(self, kind: ItemKind, item_id: str) -> tuple[Tag, ...]:
        """Fetch only the tag set of an item."""
        ...

    @abstractmethod
    async def release_dependents(self, kind: ItemKind, item_id: str) -> None:
        """Run the archive side effect for an item that reached a terminal stage."""
        ...

    @abstractmethod
    async def get_tray_parent_id(self, tray_id: str) -> str | None:
        """Return the service file id owning ``tray_id``."""
        ...


class PipelineDirectory(ABC):
    """Pipeline/stage topology source."""

    @abstractmethod
    async def list_pipelines_with_stages(self) -> list[PipelineTopology]:
        """Every pipeline with its ordered stage list."""
        ...


class BoardMaintenance(ABC):
    """Server-side sweeps triggered opportunistically by board viewers."""

    @abstractmethod
    async def expire_callbacks(self) -> None:
        """Move leads whose call-back date passed back to their active stage."""
        ...

    @abstractmethod
    async def archive_completed_leads(self, lead_ids: Sequence[str]) -> int:
        """Archive the given leads whose service files are all invoiced.

        Returns:
            Number of leads moved to the archive stage.
        """
        ...
