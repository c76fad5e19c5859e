"""Prometheus metrics middleware for HTTP request instrumentation.

Exposes standard RED metrics (Rate, Errors, Duration) as Prometheus
counters and histograms, plus engine counters for enforcement decisions,
entitlement cache lookups and seat operations.

Path normalisation collapses identifier segments (e.g.
``/customers/cus_8f2a...`` -> ``/customers/{id}``) to prevent unbounded
label cardinality.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "entitlements_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "entitlements_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

ENFORCEMENT_DECISIONS_TOTAL = Counter(
    "entitlement_enforcement_decisions_total",
    "Enforcement decisions by outcome and entitlement value type",
    ["outcome", "value_type"],
)

CACHE_REQUESTS_TOTAL = Counter(
    "entitlement_cache_requests_total",
    "Entitlement cache lookups by result",
    ["result"],
)

SEAT_OPERATIONS_TOTAL = Counter(
    "entitlement_seat_operations_total",
    "Seat operations by operation and outcome",
    ["operation", "outcome"],
)


# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_IDENTIFIER_PARENTS = ("workspaces", "customers", "seats", "check", "usage")

_PATH_PARAM_PATTERNS = [
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Segments following a collection name carry caller-supplied ids.
    (re.compile(r"/(" + "|".join(_IDENTIFIER_PARENTS) + r")/[^/]+"), r"/\1/{id}"),
    # User ids after a seat feature key.
    (re.compile(r"/seats/\{id\}/(?!bulk\b|transfer\b)[^/]+"), "/seats/{id}/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency as Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()

        HTTP_REQUEST_DURATION.labels(
            method=method,
            path=normalised,
        ).observe(duration)

        return response
