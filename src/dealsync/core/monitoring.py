"""Prometheus metrics and Sentry integration.

Provides:
- Record, batch, and invocation counters for the sync engine
- track_invocation(): Context manager timing one invocation
- init_sentry(): Initialize Sentry for the FastAPI entry point
- get_metrics_response(): Response body for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_records_total = Counter(
    "sync_records_total",
    "Records handled by the sync engine, by outcome",
    ["outcome"],
)

sync_batches_total = Counter(
    "sync_batches_total",
    "CRM batch calls issued, by kind and outcome",
    ["kind", "outcome"],
)

sync_invocations_total = Counter(
    "sync_invocations_total",
    "Sync invocations, by final status",
    ["status"],
)

sync_invocation_duration_seconds = Histogram(
    "sync_invocation_duration_seconds",
    "Wall-clock duration of a sync invocation",
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 180.0, 240.0, 300.0),
)

sync_partial_files = Gauge(
    "sync_partial_files",
    "Files with a live progress checkpoint at the end of the last invocation",
)


def record_outcomes(**counts: int) -> None:
    """Increment sync_records_total for each non-zero outcome count."""
    for outcome, count in counts.items():
        if count:
            sync_records_total.labels(outcome=outcome).inc(count)


def record_batch(kind: str, ok: bool) -> None:
    """Count one CRM batch call."""
    sync_batches_total.labels(kind=kind, outcome="success" if ok else "failure").inc()


@asynccontextmanager
async def track_invocation() -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that times an invocation and counts its status.

    Usage:
        async with track_invocation() as tracker:
            result = await orchestrator.run()
            tracker["status"] = result.status.value
    """
    tracker: dict[str, Any] = {"status": "error"}
    start_time = time.perf_counter()
    try:
        yield tracker
    finally:
        sync_invocation_duration_seconds.observe(time.perf_counter() - start_time)
        sync_invocations_total.labels(status=tracker["status"]).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response():
    """Generate Prometheus exposition format response."""
    from starlette.responses import Response

    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
