"""Prometheus metrics for board synchronization.

Provides:
- Move outcome and fallback counters for the optimistic mutator
- Realtime notification and reconnect counters for the reconciler
- Board cache read counters per tier
- track_reload(): Context manager timing full board reloads
- render_metrics(): Prometheus exposition payload
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

# ── Mutation Metrics ─────────────────────────────────────────────────────────

board_moves_total = Counter(
    "board_moves_total",
    "Optimistic moves by outcome",
    ["pipeline_id", "outcome"],
)

board_move_fallbacks_total = Counter(
    "board_move_fallbacks_total",
    "Move retries routed to another pipeline after a not-found rejection",
    ["strategy"],
)

# ── Realtime Metrics ─────────────────────────────────────────────────────────

realtime_notifications_total = Counter(
    "realtime_notifications_total",
    "Push notifications processed by the reconciler",
    ["event_type", "action"],
)

realtime_reconnects_total = Counter(
    "realtime_reconnects_total",
    "Push subscriptions re-opened after the channel dropped",
)

# ── Cache / Reload Metrics ───────────────────────────────────────────────────

board_cache_reads_total = Counter(
    "board_cache_reads_total",
    "Board cache lookups by tier (memory, session, miss)",
    ["tier"],
)

board_reloads_total = Counter(
    "board_reloads_total",
    "Full board reloads from the item store",
    ["pipeline_id", "status"],
)

board_reload_duration_seconds = Histogram(
    "board_reload_duration_seconds",
    "Full board reload duration in seconds",
    ["pipeline_id"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

background_task_runs_total = Counter(
    "background_task_runs_total",
    "Detached background task runs by outcome",
    ["task", "outcome"],
)


@asynccontextmanager
async def track_reload(pipeline_id: str) -> AsyncGenerator[None, None]:
    """Context manager that records reload count and duration.

    Usage:
        async with track_reload(pipeline_id):
            items = await store.list_items(pipeline_id)
    """
    start_time = time.perf_counter()
    status = "success"

    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        board_reloads_total.labels(pipeline_id=pipeline_id, status=status).inc()
        board_reload_duration_seconds.labels(pipeline_id=pipeline_id).observe(
            time.perf_counter() - start_time
        )


def render_metrics() -> bytes:
    """Generate Prometheus exposition format payload."""
    return generate_latest(REGISTRY)
