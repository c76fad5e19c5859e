"""Usage event definitions for the usage ledger.

Each event records metered consumption of one metric (the feature key) by
one customer.  Events are append-only; an optional idempotency key lets a
retried ingestion resolve to the event that was already stored.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


class UsageEventInput(BaseModel):
    """A single usage event submitted to the ledger.

    Attributes
    ----------
    customer_id:
        The customer that consumed the metric.
    subscription_id:
        The subscription the usage is billed against, if known.
    metric_key:
        The metered metric; for enforcement this is the feature key.
    quantity:
        Units consumed.  Must be non-negative.
    idempotency_key:
        Deduplication key; a second event with the same key is not stored.
    timestamp:
        When the consumption happened (UTC).
    properties:
        Free-form context.
    """

    customer_id: str
    subscription_id: str | None = None
    metric_key: str = Field(..., min_length=1, max_length=100)
    quantity: float = Field(default=1, ge=0)
    idempotency_key: str | None = Field(default=None, max_length=255)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    properties: dict[str, Any] = Field(default_factory=dict)


class IngestResult(BaseModel):
    """Outcome of :meth:`UsageLedger.ingest_event`."""

    id: str
    deduplicated: bool = False


class UsageSummary(BaseModel):
    """Total consumption of one metric over ``[period_start, period_end)``."""

    metric_key: str
    total_quantity: float = 0
    event_count: int = 0
    period_start: datetime
    period_end: datetime
