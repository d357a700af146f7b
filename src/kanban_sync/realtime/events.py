"""Push notification schemas.

Notifications arrive as flat JSON objects with a ``type`` discriminator.
Delivery is at-least-once and possibly reordered, so every event is handled
idempotently by the reconciler.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from src.kanban_sync.board.schemas import ItemKind
from src.kanban_sync.core.errors import MalformedNotificationError

STRUCTURE_TOPIC = "structure"
TAGS_TOPIC = "tags"


def pipeline_topic(pipeline_id: str) -> str:
    return f"pipeline:{pipeline_id}"


class _Notification(BaseModel):
    model_config = ConfigDict(frozen=True)


class PlacementUpdate(_Notification):
    """An item was placed in a (possibly new) stage."""

    type: Literal["placement_update"] = "placement_update"
    pipeline_id: str
    item_id: str
    kind: ItemKind
    stage_id: str
    moved_at: datetime | None = None


class ItemInserted(_Notification):
    """An item got a placement row in a pipeline."""

    type: Literal["item_inserted"] = "item_inserted"
    pipeline_id: str
    item_id: str
    kind: ItemKind


class ItemDeleted(_Notification):
    type: Literal["item_deleted"] = "item_deleted"
    pipeline_id: str | None = None
    item_id: str


class TagsChanged(_Notification):
    """Tags of one item changed, or the tag catalog itself when item_id is None."""

    type: Literal["tags_changed"] = "tags_changed"
    item_id: str | None = None
    kind: ItemKind | None = None


class ItemChanged(_Notification):
    """A non-placement field of an item row changed (claim owner, name)."""

    type: Literal["item_changed"] = "item_changed"
    item_id: str
    kind: ItemKind


class StructuralChange(_Notification):
    """The pipelines or stages table changed."""

    type: Literal["structural_change"] = "structural_change"
    pipeline_id: str | None = None
    table: Literal["pipelines", "stages"] = "stages"


Notification = Annotated[
    Union[PlacementUpdate, ItemInserted, ItemDeleted, TagsChanged, ItemChanged, StructuralChange],
    Field(discriminator="type"),
]

_notification_adapter: TypeAdapter[Notification] = TypeAdapter(Notification)


def parse_notification(raw: str | bytes | dict[str, Any]) -> Notification:
    """Validate a raw payload into a typed notification.

    Raises:
        MalformedNotificationError: The payload is not JSON, has an unknown
            ``type`` or is missing required fields.
    """
    try:
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        return _notification_adapter.validate_python(raw)
    except (ValueError, ValidationError) as exc:
        raise MalformedNotificationError(f"Unprocessable notification: {exc}") from exc
