"""Usage ledger over the ``usage_events`` table.

Append-only ingestion with idempotency-key deduplication, plus the period
aggregation the enforcement evaluator reads current consumption from.
"""

from __future__ import annotations

import logging
from datetime import datetime

from entitlement_core.metering import IngestResult, UsageEventInput, UsageSummary
from entitlement_core.state.repository import UsageEventRepository
from entitlement_core.state.tables import UsageEventTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class UsageLedger:
    """Record and aggregate metered usage events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ingest_event(self, workspace_id: str, event: UsageEventInput) -> IngestResult:
        """Append *event*, or return the stored event when its idempotency key was seen before."""
        repo = UsageEventRepository(self._session, workspace_id)
        if event.idempotency_key:
            existing = await repo.get_by_idempotency_key(event.idempotency_key)
            if existing is not None:
                logger.debug("Duplicate usage event ignored: key=%s", event.idempotency_key)
                return IngestResult(id=existing.id, deduplicated=True)

        row = await repo.create(event)
        logger.debug(
            "Usage event recorded: workspace=%s customer=%s metric=%s quantity=%s",
            workspace_id,
            event.customer_id,
            event.metric_key,
            event.quantity,
        )
        return IngestResult(id=row.id)

    async def get_usage_summary(
        self,
        workspace_id: str,
        customer_id: str,
        metric_key: str,
        period_start: datetime,
        period_end: datetime,
    ) -> UsageSummary:
        """Total quantity and event count of *metric_key* over ``[period_start, period_end)``."""
        repo = UsageEventRepository(self._session, workspace_id)
        total, count = await repo.sum_quantity(customer_id, metric_key, period_start, period_end)
        return UsageSummary(
            metric_key=metric_key,
            total_quantity=total,
            event_count=count,
            period_start=period_start,
            period_end=period_end,
        )

    async def list_events(
        self,
        workspace_id: str,
        *,
        customer_id: str | None = None,
        metric_key: str | None = None,
        limit: int = 50,
    ) -> list[UsageEventTable]:
        repo = UsageEventRepository(self._session, workspace_id)
        return await repo.list_events(customer_id=customer_id, metric_key=metric_key, limit=limit)
