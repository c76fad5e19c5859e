"""Initial entitlement store schema.

Creates the billing-owned ``customers`` and ``subscriptions`` tables read by
the engine, plus ``entitlements``, ``seat_assignments`` and ``usage_events``.
Every table carries ``workspace_id`` and is indexed on it.

Revision ID: 001
Revises: None
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ------------------------------------------------------------------
    # customers
    # ------------------------------------------------------------------
    op.create_table(
        "customers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_customers_workspace", "customers", ["workspace_id"])

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_subscriptions_workspace_customer_status",
        "subscriptions",
        ["workspace_id", "customer_id", "status"],
    )

    # ------------------------------------------------------------------
    # entitlements
    # ------------------------------------------------------------------
    op.create_table(
        "entitlements",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("subscription_id", sa.String(64), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("feature_key", sa.String(100), nullable=False),
        sa.Column("value", sa.String(255), nullable=False),
        sa.Column("value_type", sa.String(16), nullable=False),
        _timestamp("expires_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("subscription_id", "feature_key", name="uq_entitlements_subscription_feature"),
        sa.CheckConstraint(
            "value_type IN ('boolean', 'number', 'string', 'unlimited')",
            name="ck_entitlements_value_type",
        ),
    )
    op.create_index(
        "ix_entitlements_workspace_customer_feature",
        "entitlements",
        ["workspace_id", "customer_id", "feature_key"],
    )

    # ------------------------------------------------------------------
    # seat_assignments
    # ------------------------------------------------------------------
    op.create_table(
        "seat_assignments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("feature_key", sa.String(100), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        _timestamp("assigned_at"),
        _timestamp("expires_at", nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
    )
    op.create_index(
        "ix_seat_assignments_customer_feature",
        "seat_assignments",
        ["workspace_id", "customer_id", "feature_key"],
    )
    op.create_index(
        "ix_seat_assignments_user",
        "seat_assignments",
        ["workspace_id", "customer_id", "feature_key", "user_id"],
    )

    # ------------------------------------------------------------------
    # usage_events
    # ------------------------------------------------------------------
    op.create_table(
        "usage_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.String(64), nullable=True),
        sa.Column("metric_key", sa.String(100), nullable=False),
        sa.Column("quantity", sa.Numeric(20, 6), nullable=False, server_default="1"),
        _timestamp("timestamp"),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("properties_json", _JSON, nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint("workspace_id", "idempotency_key", name="uq_usage_events_workspace_idempotency_key"),
    )
    op.create_index(
        "ix_usage_events_customer_metric_ts",
        "usage_events",
        ["workspace_id", "customer_id", "metric_key", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("ix_usage_events_customer_metric_ts", table_name="usage_events")
    op.drop_table("usage_events")
    op.drop_index("ix_seat_assignments_user", table_name="seat_assignments")
    op.drop_index("ix_seat_assignments_customer_feature", table_name="seat_assignments")
    op.drop_table("seat_assignments")
    op.drop_index("ix_entitlements_workspace_customer_feature", table_name="entitlements")
    op.drop_table("entitlements")
    op.drop_index("ix_subscriptions_workspace_customer_status", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_customers_workspace", table_name="customers")
    op.drop_table("customers")
