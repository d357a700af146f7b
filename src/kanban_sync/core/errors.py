"""Error taxonomy for the board synchronization engine.

Four categories drive every recovery decision:

- Transient/transport failures (timeouts, resets) are retried with backoff
  and only become visible once retries are exhausted.
- Semantic rejections returned by the remote are never retried; they trigger
  rollback and are surfaced verbatim to the caller.
- Staleness (topology or cache disagree with remote truth) triggers targeted
  invalidation plus a forced reload and is reported as a soft notice.
- Malformed notifications are absorbed at the reconciliation boundary and
  degrade to a debounced full refresh.
"""

from __future__ import annotations

import asyncio

import httpx

NOT_FOUND_IN_PIPELINE = "not_found_in_pipeline"
NOT_FOUND_IN_PIPELINE_MESSAGE = "not found in the specified pipeline"

# Substrings of transport failures as reported by HTTP clients and proxies.
_NETWORK_ERROR_MARKERS = (
    "failed to fetch",
    "network request failed",
    "networkerror",
    "load failed",
    "connection refused",
    "connection reset",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "err_connection",
    "err_network",
)


class BoardSyncError(Exception):
    """Base class for every error raised by the engine."""


class TransientRemoteError(BoardSyncError):
    """The remote could not be reached or did not answer in time."""


class RemoteRejectedError(BoardSyncError):
    """The remote answered and refused the operation.

    Args:
        message: Error message exactly as returned by the remote.
        code: Stable error code, when the remote provides one.
    """

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class NotFoundInPipelineError(RemoteRejectedError):
    """The item has no placement row in the pipeline the move targeted."""

    def __init__(self, message: str = NOT_FOUND_IN_PIPELINE_MESSAGE, code: str | None = None) -> None:
        super().__init__(message, code or NOT_FOUND_IN_PIPELINE)


class SideEffectError(RemoteRejectedError):
    """A move succeeded but its downstream side effect did not."""


class MalformedNotificationError(BoardSyncError):
    """A push notification could not be parsed into a known event."""


class LoadTimeoutError(BoardSyncError):
    """Loading the board exceeded the hard ceiling."""


def rejection_from_payload(message: str, code: str | None = None) -> RemoteRejectedError:
    """Build the most specific rejection error for a remote error body."""
    if code == NOT_FOUND_IN_PIPELINE or NOT_FOUND_IN_PIPELINE_MESSAGE in message.lower():
        return NotFoundInPipelineError(message, code)
    return RemoteRejectedError(message, code)


def is_not_found_in_pipeline(exc: BaseException) -> bool:
    if isinstance(exc, NotFoundInPipelineError):
        return True
    if isinstance(exc, RemoteRejectedError):
        return exc.code == NOT_FOUND_IN_PIPELINE or NOT_FOUND_IN_PIPELINE_MESSAGE in exc.message.lower()
    return False


def is_transient(exc: BaseException) -> bool:
    """Return True if ``exc`` is a transport-level failure worth retrying.

    Semantic rejections are never transient, even when their message happens
    to mention a timeout.
    """
    if isinstance(exc, RemoteRejectedError):
        return False
    if isinstance(exc, TransientRemoteError):
        return True
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _NETWORK_ERROR_MARKERS)
