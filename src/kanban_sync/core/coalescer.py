"""Debounced refresh coalescer.

Realtime fallbacks, tag-catalog triggers and manual "retry" affordances can
all fire in the same tick. The coalescer merges any number of
``request_refresh()`` calls inside a short window into exactly one reload,
and never starts a second reload while one is in flight: a request arriving
during a reload returns immediately, since the in-flight reload will
satisfy it once it completes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


class RefreshCoalescer:
    """Trailing-edge debounce around a single reload coroutine.

    Args:
        reload: Coroutine factory performing the full reload.
        window_ms: Quiet period after the last request before reloading.
    """

    def __init__(self, reload: Callable[[], Awaitable[None]], window_ms: int = 300) -> None:
        self._reload = reload
        self._window = window_ms / 1000
        self._pending: asyncio.Task[None] | None = None
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def request_refresh(self) -> None:
        """Ask for a reload; bursts collapse into one call."""
        if self._in_flight:
            logger.debug("refresh.skipped_in_flight")
            return

        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

        self._pending = asyncio.get_running_loop().create_task(self._run_after_window())

    async def _run_after_window(self) -> None:
        await asyncio.sleep(self._window)
        self._in_flight = True
        try:
            await self._reload()
        except Exception:
            logger.error("refresh.reload_failed", exc_info=True)
        finally:
            self._in_flight = False

    async def wait(self) -> None:
        """Wait until the scheduled or running reload (if any) has finished."""
        task = self._pending
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        if self._pending is not task:
            await self.wait()

    def close(self) -> None:
        """Drop a scheduled reload that has not started yet."""
        if self._pending is not None and not self._in_flight:
            self._pending.cancel()
        self._pending = None
