"""Board data model, caches and the optimistic mutation gateway.

Provides:
- Schemas: BoardItem union (LeadItem, ServiceFileItem, TrayItem), PipelineTopology
- Collaborators: ItemStore, PipelineDirectory, BoardMaintenance ABCs and RestItemStore
- Caches: TopologyCache (pipeline directory), BoardCache (memory + session tiers)
- BoardState: immutable item list the UI paints from
- OptimisticMutator: the only writer of user intents
"""

from src.kanban_sync.board.cache import BoardCache, cache_key
from src.kanban_sync.board.mutator import OptimisticMutator, SelfMoveMarkers
from src.kanban_sync.board.rest import RestItemStore
from src.kanban_sync.board.schemas import (
    BoardItem,
    CacheEntry,
    CacheTier,
    ItemKind,
    LeadItem,
    PipelineTopology,
    ServiceFileItem,
    Stage,
    Tag,
    TrayItem,
    Viewer,
)
from src.kanban_sync.board.session import InMemorySessionStore, RedisSessionStore, SessionStore
from src.kanban_sync.board.state import BoardState
from src.kanban_sync.board.store import BoardMaintenance, ItemStore, PipelineDirectory
from src.kanban_sync.board.topology import TopologyCache

__all__ = [
    "BoardCache",
    "BoardItem",
    "BoardMaintenance",
    "BoardState",
    "CacheEntry",
    "CacheTier",
    "InMemorySessionStore",
    "ItemKind",
    "ItemStore",
    "LeadItem",
    "OptimisticMutator",
    "PipelineDirectory",
    "PipelineTopology",
    "RedisSessionStore",
    "RestItemStore",
    "SelfMoveMarkers",
    "ServiceFileItem",
    "SessionStore",
    "Stage",
    "Tag",
    "TopologyCache",
    "TrayItem",
    "Viewer",
    "cache_key",
]
