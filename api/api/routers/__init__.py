"""API router modules for the entitlement service."""

from __future__ import annotations

from api.routers import entitlements, health, metrics, seats, usage

__all__ = [
    "entitlements",
    "health",
    "metrics",
    "seats",
    "usage",
]
