"""Prometheus metrics for the discovery backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters around the lazy tree materialization.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "discovery_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

CHILDREN_LOOKUPS = Counter(
    "discovery_children_lookups_total",
    "Children lookups by outcome (hit, generated, bootstrap)",
    labelnames=("outcome",),
)

NODES_CREATED = Counter(
    "discovery_nodes_created_total",
    "Nodes persisted by generation or root bootstrap",
)

GENERATION_FAILURES = Counter(
    "discovery_generation_failures_total",
    "Generation attempts that raised before any node was stored",
)

# LLM calls are slow; buckets stretch to a minute
GENERATION_LATENCY = Histogram(
    "discovery_generation_latency_seconds",
    "Latency of generator calls in seconds",
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0),
)


def sanitize_path(path: str) -> str:
    """Label ``/tree/nodes/42`` and ``/tree/nodes/7`` alike as ``/tree/nodes/{id}``."""
    path = path.split("?", 1)[0] or "/"
    return "/".join("{id}" if seg.isdecimal() else seg for seg in path.split("/"))


Handler = Callable[[Request], Awaitable[Response]]


def metrics_middleware_factory() -> Callable[[Request, Handler], Awaitable[Response]]:
    async def observe_latency(request: Request, call_next: Handler) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        started = time.perf_counter()
        response = await call_next(request)
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(time.perf_counter() - started)
        return response

    return observe_latency
