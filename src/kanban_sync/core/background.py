"""Throttled, detached background tasks.

Background work (expiry sweeps, archive sweeps) runs off the render path:
it is throttled to a minimum interval, single-flight, wrapped in the
background retry policy and a hard timeout, and its failures are logged
rather than surfaced to the user.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from src.kanban_sync.core.monitoring import background_task_runs_total
from src.kanban_sync.core.retry import RetryPolicy, with_retry

logger = structlog.get_logger(__name__)


class ThrottledTask:
    """A named background job that runs at most once per ``min_interval``.

    Args:
        name: Label used in logs and metrics.
        job: Coroutine factory doing the actual work.
        min_interval_seconds: Minimum time between two starts. Zero means
            only the single-flight rule applies.
        policy: Retry policy for transient failures of ``job``.
        timeout_seconds: Hard ceiling for one run (all attempts included).
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        min_interval_seconds: float = 0.0,
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._job = job
        self._min_interval = min_interval_seconds
        self._policy = policy or RetryPolicy(max_attempts=2, delay_ms=2000)
        self._timeout = timeout_seconds
        self._clock = clock
        self._last_started: float | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def maybe_start(self) -> asyncio.Task[None] | None:
        """Start the job detached unless throttled or already running.

        Returns:
            The spawned task, or None when the call was throttled.
        """
        if self.running:
            return None
        now = self._clock()
        if self._last_started is not None and now - self._last_started < self._min_interval:
            logger.debug("background.throttled", task=self.name)
            return None

        self._last_started = now
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _run(self) -> None:
        try:
            await asyncio.wait_for(with_retry(self._job, self._policy), timeout=self._timeout)
        except Exception as exc:
            background_task_runs_total.labels(task=self.name, outcome="error").inc()
            logger.warning("background.task_failed", task=self.name, error=str(exc))
            return

        background_task_runs_total.labels(task=self.name, outcome="success").inc()
        logger.debug("background.task_completed", task=self.name)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
