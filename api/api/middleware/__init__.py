"""Middleware components for the entitlement API.

The entitlement policy binding lives in :mod:`api.middleware.enforcement`
and is imported from there directly.
"""

from __future__ import annotations

from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
