"""Bounded retry with exponential backoff for remote calls.

Only transport-classified failures are retried; semantic rejections returned
by the remote fail fast on the first attempt. Built on tenacity, like every
other remote client in the package.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.kanban_sync.core.errors import is_transient

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how patiently, to retry a remote call.

    Attributes:
        max_attempts: Total attempts including the first one.
        delay_ms: Delay before the second attempt.
        backoff_multiplier: Factor applied to the delay after each failure
            (2 gives 1500ms, 3000ms, 6000ms...).
    """

    max_attempts: int = 3
    delay_ms: int = 1000
    backoff_multiplier: float = 2.0


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry.transient_failure",
        attempt=retry_state.attempt_number,
        delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc),
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> T:
    """Run ``operation`` and retry it on transient failures.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempts and backoff. Defaults to 3 attempts, 1s, x2.
        should_retry: Predicate deciding whether a failure is retryable.

    Returns:
        The first successful result.

    Raises:
        The last exception once attempts are exhausted, or the first
        non-retryable exception immediately.
    """
    policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=wait_exponential(
            multiplier=policy.delay_ms / 1000,
            exp_base=policy.backoff_multiplier,
            min=0,
        ),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable: tenacity re-raises the last failure")  # pragma: no cover
