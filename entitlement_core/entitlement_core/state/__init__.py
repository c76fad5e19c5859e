"""Entitlement store persistence layer."""

from entitlement_core.state.database import get_engine, get_session
from entitlement_core.state.repository import (
    CustomerRepository,
    EntitlementRepository,
    SeatRepository,
    SubscriptionRepository,
    UsageEventRepository,
)

__all__ = [
    "CustomerRepository",
    "EntitlementRepository",
    "SeatRepository",
    "SubscriptionRepository",
    "UsageEventRepository",
    "get_engine",
    "get_session",
]
