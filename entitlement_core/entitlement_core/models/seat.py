"""Seat assignment records returned by the seat manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class SeatAssignment:
    """One user occupying one unit of a capacity-bound feature."""

    id: str
    workspace_id: str
    customer_id: str
    feature_key: str
    user_id: str
    assigned_at: datetime
    user_email: str | None = None
    user_name: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> SeatAssignment:
        """Build from a :class:`~entitlement_core.state.tables.SeatAssignmentTable` row."""
        return cls(
            id=row.id,
            workspace_id=row.workspace_id,
            customer_id=row.customer_id,
            feature_key=row.feature_key,
            user_id=row.user_id,
            assigned_at=row.assigned_at,
            user_email=row.user_email,
            user_name=row.user_name,
            expires_at=row.expires_at,
            metadata=dict(row.metadata_json or {}),
        )


@dataclass(frozen=True, slots=True)
class SeatUsageSummary:
    """Capacity accounting for one feature.

    ``total_seats`` and ``available_seats`` are ``None`` when the feature is
    unlimited.  A customer without access reports zero capacity.
    """

    feature_key: str
    total_seats: int | None
    used_seats: int
    available_seats: int | None
    is_unlimited: bool
    assignments: list[SeatAssignment] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SeatUser:
    """A user to be seated by a bulk assignment."""

    user_id: str
    user_email: str | None = None
    user_name: str | None = None


@dataclass(frozen=True, slots=True)
class SeatError:
    """Per-user failure inside a bulk operation."""

    user_id: str
    error: str


@dataclass(slots=True)
class BulkAssignResult:
    assigned: list[SeatAssignment] = field(default_factory=list)
    errors: list[SeatError] = field(default_factory=list)


@dataclass(slots=True)
class BulkUnassignResult:
    unassigned: int = 0
    errors: list[SeatError] = field(default_factory=list)
