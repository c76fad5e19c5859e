"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.

JSON has no representation for infinity, so every non-finite number
(unlimited limits and remaining counts, unparsable NaN quotas) is rendered
as ``null``.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from entitlement_core.metering import UsageSummary
from entitlement_core.models import (
    BulkAssignResult,
    BulkUnassignResult,
    EnforcementResult,
    EntitlementCheck,
    FeatureUsage,
    SeatAssignment,
    SeatUsageSummary,
)
from pydantic import BaseModel, Field


def _finite(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


# ---------------------------------------------------------------------------
# Entitlement schemas
# ---------------------------------------------------------------------------


class EntitlementCheckResponse(BaseModel):
    """Resolved access of one customer to one feature."""

    feature_key: str
    has_access: bool
    value: bool | float | str | None = None
    value_type: str | None = None

    @classmethod
    def from_check(cls, check: EntitlementCheck) -> EntitlementCheckResponse:
        raw: Any = check.value.raw if check.value is not None else None
        if isinstance(raw, float):
            raw = _finite(raw)
        return cls(
            feature_key=check.feature_key,
            has_access=check.has_access,
            value=raw,
            value_type=check.value_type.value if check.value_type is not None else None,
        )


class CustomerEntitlementsResponse(BaseModel):
    customer_id: str
    entitlements: list[EntitlementCheckResponse] = Field(default_factory=list)
    active_subscription_ids: list[str] = Field(default_factory=list)


class CheckEntitlementsRequest(BaseModel):
    """Body of a multi-feature check."""

    feature_keys: list[str] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Enforcement / usage schemas
# ---------------------------------------------------------------------------


class EnforcementResultResponse(BaseModel):
    allowed: bool
    feature_key: str
    current_usage: float | None = None
    limit: float | None = None
    remaining: float | None = None
    message: str | None = None
    entitlement: EntitlementCheckResponse

    @classmethod
    def from_result(cls, result: EnforcementResult) -> EnforcementResultResponse:
        return cls(
            allowed=result.allowed,
            feature_key=result.feature_key,
            current_usage=_finite(result.current_usage),
            limit=_finite(result.limit),
            remaining=_finite(result.remaining),
            message=result.message,
            entitlement=EntitlementCheckResponse.from_check(result.entitlement),
        )


class RecordUsageRequest(BaseModel):
    """Body of ``POST /usage/{feature_key}``.

    ``quantity`` is read by the route's entitlement policy before the
    request body is validated, so it is also the units enforced.
    """

    quantity: float = Field(default=1, ge=0)
    subscription_id: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)


class FeatureUsageResponse(BaseModel):
    feature_key: str
    current_usage: float
    limit: float | None = None
    remaining: float | None = None
    percent_used: int | None = None

    @classmethod
    def from_usage(cls, usage: FeatureUsage) -> FeatureUsageResponse:
        return cls(
            feature_key=usage.feature_key,
            current_usage=usage.current_usage,
            limit=_finite(usage.limit),
            remaining=_finite(usage.remaining),
            percent_used=usage.percent_used,
        )


class UsageSummaryResponse(BaseModel):
    customer_id: str
    period_start: datetime
    period_end: datetime
    features: list[FeatureUsageResponse] = Field(default_factory=list)


class MetricUsageResponse(BaseModel):
    metric_key: str
    total_quantity: float
    event_count: int
    period_start: datetime
    period_end: datetime

    @classmethod
    def from_summary(cls, summary: UsageSummary) -> MetricUsageResponse:
        return cls(**summary.model_dump())


# ---------------------------------------------------------------------------
# Seat schemas
# ---------------------------------------------------------------------------


class SeatAssignmentResponse(BaseModel):
    id: str
    customer_id: str
    feature_key: str
    user_id: str
    user_email: str | None = None
    user_name: str | None = None
    assigned_at: datetime
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_assignment(cls, assignment: SeatAssignment) -> SeatAssignmentResponse:
        return cls(
            id=assignment.id,
            customer_id=assignment.customer_id,
            feature_key=assignment.feature_key,
            user_id=assignment.user_id,
            user_email=assignment.user_email,
            user_name=assignment.user_name,
            assigned_at=assignment.assigned_at,
            expires_at=assignment.expires_at,
            metadata=assignment.metadata,
        )


class SeatUsageResponse(BaseModel):
    """Capacity of one seat feature; ``total_seats`` is ``null`` when unlimited."""

    feature_key: str
    total_seats: int | None = None
    used_seats: int
    available_seats: int | None = None
    is_unlimited: bool
    assignments: list[SeatAssignmentResponse] = Field(default_factory=list)

    @classmethod
    def from_summary(cls, summary: SeatUsageSummary) -> SeatUsageResponse:
        return cls(
            feature_key=summary.feature_key,
            total_seats=summary.total_seats,
            used_seats=summary.used_seats,
            available_seats=summary.available_seats,
            is_unlimited=summary.is_unlimited,
            assignments=[SeatAssignmentResponse.from_assignment(a) for a in summary.assignments],
        )


class AssignSeatRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    user_email: str | None = Field(default=None, max_length=255)
    user_name: str | None = Field(default=None, max_length=255)
    expires_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class SeatUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    user_email: str | None = Field(default=None, max_length=255)
    user_name: str | None = Field(default=None, max_length=255)


class BulkSeatRequest(BaseModel):
    """Seat ``assign`` users and release ``unassign`` user ids in one call."""

    assign: list[SeatUserRequest] = Field(default_factory=list)
    unassign: list[str] = Field(default_factory=list)


class SeatErrorResponse(BaseModel):
    user_id: str
    error: str


class BulkSeatResponse(BaseModel):
    assigned: list[SeatAssignmentResponse] = Field(default_factory=list)
    unassigned: int = 0
    errors: list[SeatErrorResponse] = Field(default_factory=list)

    @classmethod
    def from_results(
        cls,
        assign_result: BulkAssignResult | None,
        unassign_result: BulkUnassignResult | None,
    ) -> BulkSeatResponse:
        response = cls()
        if assign_result is not None:
            response.assigned = [SeatAssignmentResponse.from_assignment(a) for a in assign_result.assigned]
            response.errors.extend(SeatErrorResponse(user_id=e.user_id, error=e.error) for e in assign_result.errors)
        if unassign_result is not None:
            response.unassigned = unassign_result.unassigned
            response.errors.extend(
                SeatErrorResponse(user_id=e.user_id, error=e.error) for e in unassign_result.errors
            )
        return response


class TransferSeatRequest(BaseModel):
    from_user_id: str = Field(..., min_length=1, max_length=255)
    to_user_id: str = Field(..., min_length=1, max_length=255)
    user_email: str | None = Field(default=None, max_length=255)
    user_name: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None
