"""Push notifications: schemas, channels and the reconciler."""

from src.kanban_sync.realtime.channel import InMemoryChannel, NotificationChannel, RedisChannel
from src.kanban_sync.realtime.events import (
    ItemChanged,
    ItemDeleted,
    ItemInserted,
    PlacementUpdate,
    StructuralChange,
    TagsChanged,
    parse_notification,
    pipeline_topic,
)
from src.kanban_sync.realtime.reconciler import RealtimeReconciler

__all__ = [
    "InMemoryChannel",
    "ItemChanged",
    "ItemDeleted",
    "ItemInserted",
    "NotificationChannel",
    "PlacementUpdate",
    "RealtimeReconciler",
    "RedisChannel",
    "StructuralChange",
    "TagsChanged",
    "parse_notification",
    "pipeline_topic",
]
