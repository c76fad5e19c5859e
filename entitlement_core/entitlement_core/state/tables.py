"""SQLAlchemy 2.0 ORM table definitions for the entitlement store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.

Customers and subscriptions are owned by the surrounding billing system; the
engine only reads them (existence checks, subscription status and billing
period).  Entitlements, seat assignments and usage events are read and written
here.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain JSON
# (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Subscription statuses under which entitlements are honoured.
ACTIVE_SUBSCRIPTION_STATUSES: tuple[str, ...] = ("active", "trialing")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all entitlement store tables."""


# ---------------------------------------------------------------------------
# Billing-owned tables (read-only for the engine)
# ---------------------------------------------------------------------------


class CustomerTable(Base):
    """A billed customer within a workspace."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_customers_workspace", "workspace_id"),)


class SubscriptionTable(Base):
    """A customer's subscription and its current billing period."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), ForeignKey("customers.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_subscriptions_workspace_customer_status", "workspace_id", "customer_id", "status"),
    )


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementTable(Base):
    """A feature grant owned by the subscription that provisioned it.

    ``value`` is stored as text and interpreted according to ``value_type``.
    One row per (subscription, feature); grants are upserts on that pair.
    """

    __tablename__ = "entitlements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), ForeignKey("customers.id"), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), ForeignKey("subscriptions.id"), nullable=False)
    feature_key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    value_type: Mapped[str] = mapped_column(String(16), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("subscription_id", "feature_key", name="uq_entitlements_subscription_feature"),
        CheckConstraint(
            "value_type IN ('boolean', 'number', 'string', 'unlimited')",
            name="ck_entitlements_value_type",
        ),
        Index("ix_entitlements_workspace_customer_feature", "workspace_id", "customer_id", "feature_key"),
    )


# ---------------------------------------------------------------------------
# Seats
# ---------------------------------------------------------------------------


class SeatAssignmentTable(Base):
    """A user occupying one unit of a capacity-bound feature."""

    __tablename__ = "seat_assignments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), ForeignKey("customers.id"), nullable=False)
    feature_key: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)

    __table_args__ = (
        Index("ix_seat_assignments_customer_feature", "workspace_id", "customer_id", "feature_key"),
        Index("ix_seat_assignments_user", "workspace_id", "customer_id", "feature_key", "user_id"),
    )


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsageEventTable(Base):
    """Append-only metered usage events, summed per period for enforcement."""

    __tablename__ = "usage_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metric_key: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[float] = mapped_column(Numeric(20, 6, asdecimal=False), nullable=False, default=1)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    properties_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_usage_events_customer_metric_ts", "workspace_id", "customer_id", "metric_key", "timestamp"),
        UniqueConstraint("workspace_id", "idempotency_key", name="uq_usage_events_workspace_idempotency_key"),
    )
