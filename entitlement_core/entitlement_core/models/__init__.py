"""Domain models for the entitlement engine."""

from entitlement_core.models.entitlement import (
    BooleanValue,
    CustomerEntitlements,
    EnforcementResult,
    EntitlementCheck,
    EntitlementValue,
    EntitlementValueType,
    FeatureUsage,
    NumberValue,
    StringValue,
    UnlimitedValue,
    format_quantity,
    is_unlimited,
    parse_entitlement_value,
)
from entitlement_core.models.seat import (
    BulkAssignResult,
    BulkUnassignResult,
    SeatAssignment,
    SeatError,
    SeatUsageSummary,
    SeatUser,
)

__all__ = [
    "BooleanValue",
    "BulkAssignResult",
    "BulkUnassignResult",
    "CustomerEntitlements",
    "EnforcementResult",
    "EntitlementCheck",
    "EntitlementValue",
    "EntitlementValueType",
    "FeatureUsage",
    "NumberValue",
    "SeatAssignment",
    "SeatError",
    "SeatUsageSummary",
    "SeatUser",
    "StringValue",
    "UnlimitedValue",
    "format_quantity",
    "is_unlimited",
    "parse_entitlement_value",
]
