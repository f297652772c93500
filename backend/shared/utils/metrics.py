"""
Lightweight metrics collection for LiveFoot.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
PROVIDER_REQUESTS = Counter(
    "lf_provider_requests_total",
    "Total provider HTTP requests",
    ["provider", "endpoint", "status"],
)
CACHE_LOOKUPS = Counter(
    "lf_cache_lookups_total",
    "Cache lookups by result",
    ["result"],
)
SYNC_TICKS = Counter(
    "lf_sync_ticks_total",
    "Completed sync runs",
    ["kind", "outcome"],
)
FIXTURE_SYNC_ERRORS = Counter(
    "lf_fixture_sync_errors_total",
    "Fixtures that failed to reconcile",
    ["kind"],
)
FANOUT_EMITS = Counter(
    "lf_fanout_emits_total",
    "Real-time events emitted to topics",
    ["event"],
)
WS_MESSAGES = Counter(
    "lf_ws_messages_total",
    "Total WebSocket messages",
    ["direction"],
)
INSIGHTS_GENERATED = Counter(
    "lf_insights_generated_total",
    "AI insights generated",
    ["insight_type"],
)

# ── Histograms ──────────────────────────────────────────────────────────
PROVIDER_LATENCY = Histogram(
    "lf_provider_latency_seconds",
    "Provider request latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
SYNC_DURATION = Histogram(
    "lf_sync_duration_seconds",
    "Wall time of one sync run",
    ["kind"],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

# ── Gauges ──────────────────────────────────────────────────────────────
WS_CONNECTIONS = Gauge(
    "lf_ws_connections_active",
    "Currently active WebSocket connections",
)
WS_SUBSCRIPTIONS = Gauge(
    "lf_ws_subscriptions_active",
    "Currently active topic subscriptions",
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
