"""Repository classes providing access to the entitlement store.

Each repository takes an ``AsyncSession`` and a ``workspace_id`` at
construction time and operates within the caller's transaction boundary.
All writes call ``session.flush()`` so that generated defaults are populated;
the caller is responsible for calling ``session.commit()`` (or relying on the
``get_session`` context manager).

"Active" is defined once here and applied by every read path:

* an entitlement is active when its subscription's status is ``active`` or
  ``trialing`` and ``expires_at`` is NULL or in the future;
* a seat assignment is active when ``expires_at`` is NULL or in the future.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_core.metering.events import UsageEventInput
from entitlement_core.state.tables import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    CustomerTable,
    EntitlementTable,
    SeatAssignmentTable,
    SubscriptionTable,
    UsageEventTable,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Billing lookups
# ---------------------------------------------------------------------------


class CustomerRepository:
    """Read-only customer lookups scoped to one workspace."""

    def __init__(self, session: AsyncSession, workspace_id: str) -> None:
        self._session = session
        self._workspace_id = workspace_id

    async def get(self, customer_id: str) -> CustomerTable | None:
        stmt = select(CustomerTable).where(
            CustomerTable.id == customer_id,
            CustomerTable.workspace_id == self._workspace_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def exists(self, customer_id: str) -> bool:
        return await self.get(customer_id) is not None


class SubscriptionRepository:
    """Subscription status and billing-period lookups scoped to one workspace."""

    def __init__(self, session: AsyncSession, workspace_id: str) -> None:
        self._session = session
        self._workspace_id = workspace_id

    async def list_active_ids(self, customer_id: str) -> list[str]:
        """Return ids of the customer's ``active``/``trialing`` subscriptions."""
        stmt = (
            select(SubscriptionTable.id)
            .where(
                SubscriptionTable.workspace_id == self._workspace_id,
                SubscriptionTable.customer_id == customer_id,
                SubscriptionTable.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
            )
            .order_by(SubscriptionTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_latest_active(self, customer_id: str) -> SubscriptionTable | None:
        """Return the most recently created ``active``/``trialing`` subscription."""
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.workspace_id == self._workspace_id,
                SubscriptionTable.customer_id == customer_id,
                SubscriptionTable.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
            )
            .order_by(SubscriptionTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """CRUD over entitlement grants, with the active filter applied to every read."""

    def __init__(self, session: AsyncSession, workspace_id: str) -> None:
        self._session = session
        self._workspace_id = workspace_id

    def _active_select(self, customer_id: str) -> Any:
        now = _utcnow()
        return (
            select(EntitlementTable)
            .join(SubscriptionTable, SubscriptionTable.id == EntitlementTable.subscription_id)
            .where(
                EntitlementTable.workspace_id == self._workspace_id,
                EntitlementTable.customer_id == customer_id,
                SubscriptionTable.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
                or_(EntitlementTable.expires_at.is_(None), EntitlementTable.expires_at > now),
            )
        )

    async def find_active(self, customer_id: str, feature_key: str) -> EntitlementTable | None:
        """Return the active grant of *feature_key*, most recently updated first."""
        stmt = (
            self._active_select(customer_id)
            .where(EntitlementTable.feature_key == feature_key)
            .order_by(EntitlementTable.updated_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active_many(self, customer_id: str, feature_keys: Sequence[str]) -> list[EntitlementTable]:
        """Return active grants for any of *feature_keys* in a single query."""
        if not feature_keys:
            return []
        stmt = (
            self._active_select(customer_id)
            .where(EntitlementTable.feature_key.in_(list(feature_keys)))
            .order_by(EntitlementTable.updated_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_active_for_customer(self, customer_id: str) -> list[EntitlementTable]:
        stmt = self._active_select(customer_id).order_by(
            EntitlementTable.feature_key.asc(), EntitlementTable.updated_at.asc()
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        feature_key: str,
        value: str,
        value_type: str,
        expires_at: datetime | None = None,
    ) -> EntitlementTable:
        """Insert or update the grant keyed by ``(subscription_id, feature_key)``."""
        now = _utcnow()
        values: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "workspace_id": self._workspace_id,
            "customer_id": customer_id,
            "subscription_id": subscription_id,
            "feature_key": feature_key,
            "value": value,
            "value_type": value_type,
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            EntitlementTable,
            values,
            index_elements=["subscription_id", "feature_key"],
            update_columns=["value", "value_type", "expires_at", "updated_at"],
        )
        stmt = (
            select(EntitlementTable)
            .where(
                EntitlementTable.subscription_id == subscription_id,
                EntitlementTable.feature_key == feature_key,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def customer_ids_for_subscription(
        self,
        subscription_id: str,
        feature_key: str | None = None,
    ) -> list[str]:
        """Distinct customers holding grants from *subscription_id* (for cache invalidation)."""
        stmt = select(EntitlementTable.customer_id).where(
            EntitlementTable.workspace_id == self._workspace_id,
            EntitlementTable.subscription_id == subscription_id,
        )
        if feature_key is not None:
            stmt = stmt.where(EntitlementTable.feature_key == feature_key)
        result = await self._session.execute(stmt.distinct())
        return list(result.scalars().all())

    async def delete(self, subscription_id: str, feature_key: str | None = None) -> int:
        """Delete grants of *subscription_id* (one feature or all).  Returns rows removed."""
        stmt = delete(EntitlementTable).where(
            EntitlementTable.workspace_id == self._workspace_id,
            EntitlementTable.subscription_id == subscription_id,
        )
        if feature_key is not None:
            stmt = stmt.where(EntitlementTable.feature_key == feature_key)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)

    async def update_expires_at(self, subscription_id: str, new_expires_at: datetime | None) -> int:
        """Set ``expires_at`` on every grant of *subscription_id*.  Returns rows updated."""
        stmt = (
            update(EntitlementTable)
            .where(
                EntitlementTable.workspace_id == self._workspace_id,
                EntitlementTable.subscription_id == subscription_id,
            )
            .values(expires_at=new_expires_at, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# SeatRepository
# ---------------------------------------------------------------------------


class SeatRepository:
    """CRUD over seat assignment rows."""

    def __init__(self, session: AsyncSession, workspace_id: str) -> None:
        self._session = session
        self._workspace_id = workspace_id

    def _active_where(self, customer_id: str, feature_key: str) -> list[Any]:
        now = _utcnow()
        return [
            SeatAssignmentTable.workspace_id == self._workspace_id,
            SeatAssignmentTable.customer_id == customer_id,
            SeatAssignmentTable.feature_key == feature_key,
            or_(SeatAssignmentTable.expires_at.is_(None), SeatAssignmentTable.expires_at > now),
        ]

    async def find_active(self, customer_id: str, feature_key: str, user_id: str) -> SeatAssignmentTable | None:
        stmt = (
            select(SeatAssignmentTable)
            .where(*self._active_where(customer_id, feature_key), SeatAssignmentTable.user_id == user_id)
            .order_by(SeatAssignmentTable.assigned_at.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_active(self, customer_id: str, feature_key: str) -> int:
        stmt = select(func.count()).select_from(SeatAssignmentTable).where(*self._active_where(customer_id, feature_key))
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def list_active(self, customer_id: str, feature_key: str) -> list[SeatAssignmentTable]:
        stmt = (
            select(SeatAssignmentTable)
            .where(*self._active_where(customer_id, feature_key))
            .order_by(SeatAssignmentTable.assigned_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        *,
        customer_id: str,
        feature_key: str,
        user_id: str,
        user_email: str | None = None,
        user_name: str | None = None,
        expires_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SeatAssignmentTable:
        row = SeatAssignmentTable(
            id=str(uuid.uuid4()),
            workspace_id=self._workspace_id,
            customer_id=customer_id,
            feature_key=feature_key,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            assigned_at=_utcnow(),
            expires_at=expires_at,
            metadata_json=dict(metadata or {}),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def delete_row(self, row: SeatAssignmentTable) -> None:
        await self._session.delete(row)
        await self._session.flush()

    async def get_by_id(self, assignment_id: str) -> SeatAssignmentTable | None:
        stmt = select(SeatAssignmentTable).where(
            SeatAssignmentTable.workspace_id == self._workspace_id,
            SeatAssignmentTable.id == assignment_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_by_id(self, assignment_id: str) -> int:
        """Delete the assignment if it is still active.  Returns rows removed."""
        now = _utcnow()
        stmt = delete(SeatAssignmentTable).where(
            SeatAssignmentTable.workspace_id == self._workspace_id,
            SeatAssignmentTable.id == assignment_id,
            or_(SeatAssignmentTable.expires_at.is_(None), SeatAssignmentTable.expires_at > now),
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)

    async def delete_for_user(self, customer_id: str, feature_key: str, user_id: str) -> int:
        stmt = delete(SeatAssignmentTable).where(
            *self._active_where(customer_id, feature_key),
            SeatAssignmentTable.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)

    async def delete_all(self, customer_id: str, feature_key: str | None = None) -> int:
        """Delete every seat row (active or expired) of the customer, optionally for one feature."""
        stmt = delete(SeatAssignmentTable).where(
            SeatAssignmentTable.workspace_id == self._workspace_id,
            SeatAssignmentTable.customer_id == customer_id,
        )
        if feature_key is not None:
            stmt = stmt.where(SeatAssignmentTable.feature_key == feature_key)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# UsageEventRepository
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Append-only usage event storage and period aggregation."""

    def __init__(self, session: AsyncSession, workspace_id: str) -> None:
        self._session = session
        self._workspace_id = workspace_id

    async def get_by_idempotency_key(self, idempotency_key: str) -> UsageEventTable | None:
        """Idempotency keys are unique per workspace."""
        stmt = select(UsageEventTable).where(
            UsageEventTable.workspace_id == self._workspace_id,
            UsageEventTable.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, event: UsageEventInput) -> UsageEventTable:
        row = UsageEventTable(
            id=str(uuid.uuid4()),
            workspace_id=self._workspace_id,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            metric_key=event.metric_key,
            quantity=event.quantity,
            timestamp=event.timestamp,
            idempotency_key=event.idempotency_key,
            properties_json=dict(event.properties),
            created_at=_utcnow(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def sum_quantity(
        self,
        customer_id: str,
        metric_key: str,
        period_start: datetime,
        period_end: datetime,
    ) -> tuple[float, int]:
        """Return ``(total_quantity, event_count)`` over ``[period_start, period_end)``."""
        stmt = select(
            func.coalesce(func.sum(UsageEventTable.quantity), 0),
            func.count(UsageEventTable.id),
        ).where(
            UsageEventTable.workspace_id == self._workspace_id,
            UsageEventTable.customer_id == customer_id,
            UsageEventTable.metric_key == metric_key,
            UsageEventTable.timestamp >= period_start,
            UsageEventTable.timestamp < period_end,
        )
        result = await self._session.execute(stmt)
        total, count = result.one()
        return float(total or 0), int(count or 0)

    async def list_events(
        self,
        *,
        customer_id: str | None = None,
        metric_key: str | None = None,
        limit: int = 50,
    ) -> list[UsageEventTable]:
        stmt = select(UsageEventTable).where(UsageEventTable.workspace_id == self._workspace_id)
        if customer_id is not None:
            stmt = stmt.where(UsageEventTable.customer_id == customer_id)
        if metric_key is not None:
            stmt = stmt.where(UsageEventTable.metric_key == metric_key)
        stmt = stmt.order_by(UsageEventTable.timestamp.desc()).limit(min(limit, 500))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
