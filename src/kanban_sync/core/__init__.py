"""Engine primitives shared by the board and realtime layers.

Exports:
    RetryPolicy / with_retry: Bounded exponential backoff for transport failures.
    RefreshCoalescer: Debounced, single-flight full reload.
    ThrottledTask: Detached background job with a minimum interval.
    Error taxonomy: BoardSyncError and its subclasses.
"""

from src.kanban_sync.core.background import ThrottledTask
from src.kanban_sync.core.coalescer import RefreshCoalescer
from src.kanban_sync.core.errors import (
    BoardSyncError,
    LoadTimeoutError,
    MalformedNotificationError,
    NotFoundInPipelineError,
    RemoteRejectedError,
    SideEffectError,
    TransientRemoteError,
    is_transient,
)
from src.kanban_sync.core.retry import RetryPolicy, with_retry

__all__ = [
    "BoardSyncError",
    "LoadTimeoutError",
    "MalformedNotificationError",
    "NotFoundInPipelineError",
    "RefreshCoalescer",
    "RemoteRejectedError",
    "RetryPolicy",
    "SideEffectError",
    "ThrottledTask",
    "TransientRemoteError",
    "is_transient",
    "with_retry",
]
