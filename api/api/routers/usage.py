"""Metered usage endpoints.

``POST /usage/{feature_key}`` enforces the feature through the entitlement
policy binding and appends a usage event only when the request is allowed.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, status

from api.dependencies import EnforcementServiceDep, UsageLedgerDep
from api.middleware.enforcement import EnforcementPolicy, build_request_context, evaluate_policy
from api.schemas import (
    EnforcementResultResponse,
    FeatureUsageResponse,
    MetricUsageResponse,
    RecordUsageRequest,
    UsageSummaryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/customers/{customer_id}/usage",
    tags=["usage"],
)


@router.get("", response_model=UsageSummaryResponse)
async def get_usage_summary(
    workspace_id: str,
    customer_id: str,
    service: EnforcementServiceDep,
) -> UsageSummaryResponse:
    """Current-period usage of every metered feature.  404 for an unknown customer."""
    features = await service.get_usage_summary(workspace_id, customer_id)
    period_start, period_end = await service.get_current_period(workspace_id, customer_id)
    return UsageSummaryResponse(
        customer_id=customer_id,
        period_start=period_start,
        period_end=period_end,
        features=[FeatureUsageResponse.from_usage(f) for f in features],
    )


@router.get("/{feature_key}", response_model=MetricUsageResponse)
async def get_feature_usage(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    service: EnforcementServiceDep,
    ledger: UsageLedgerDep,
) -> MetricUsageResponse:
    period_start, period_end = await service.get_current_period(workspace_id, customer_id)
    summary = await ledger.get_usage_summary(workspace_id, customer_id, feature_key, period_start, period_end)
    return MetricUsageResponse.from_summary(summary)


@router.post("/{feature_key}", response_model=EnforcementResultResponse, status_code=status.HTTP_201_CREATED)
async def record_feature_usage(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    body: RecordUsageRequest,
    request: Request,
    service: EnforcementServiceDep,
) -> EnforcementResultResponse:
    """Enforce *feature_key* for ``quantity`` units, then record them.

    A denial is answered with 403 and nothing is recorded.
    """
    policy = EnforcementPolicy(features=(feature_key,), increment_from_body="quantity")
    context = await build_request_context(request)
    decision = await evaluate_policy(policy, context, service)
    request.state.enforcement_result = decision.attachment
    if not decision.allowed and decision.error is not None:
        raise decision.error

    result = decision.results[0]
    await service.record_usage(
        workspace_id,
        customer_id,
        feature_key,
        body.quantity,
        body.subscription_id,
        idempotency_key=body.idempotency_key,
    )
    return EnforcementResultResponse.from_result(result)
