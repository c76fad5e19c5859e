"""Entitlement lookup endpoints for one customer of a workspace."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from api.dependencies import EntitlementServiceDep
from api.schemas import (
    CheckEntitlementsRequest,
    CustomerEntitlementsResponse,
    EntitlementCheckResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/customers/{customer_id}/entitlements",
    tags=["entitlements"],
)


@router.get("", response_model=CustomerEntitlementsResponse)
async def list_customer_entitlements(
    workspace_id: str,
    customer_id: str,
    service: EntitlementServiceDep,
) -> CustomerEntitlementsResponse:
    """Return every active entitlement of the customer.  404 for an unknown customer."""
    customer = await service.get_customer_entitlements(workspace_id, customer_id)
    return CustomerEntitlementsResponse(
        customer_id=customer.customer_id,
        entitlements=[EntitlementCheckResponse.from_check(c) for c in customer.entitlements],
        active_subscription_ids=customer.active_subscription_ids,
    )


@router.get("/check/{feature_key}", response_model=EntitlementCheckResponse)
async def check_entitlement(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    service: EntitlementServiceDep,
) -> EntitlementCheckResponse:
    check = await service.check_entitlement(workspace_id, customer_id, feature_key)
    return EntitlementCheckResponse.from_check(check)


@router.post("/check", response_model=list[EntitlementCheckResponse])
async def check_entitlements(
    workspace_id: str,
    customer_id: str,
    body: CheckEntitlementsRequest,
    service: EntitlementServiceDep,
) -> list[EntitlementCheckResponse]:
    """Check several features at once; results follow the order of ``feature_keys``."""
    checks = await service.check_multiple_entitlements(workspace_id, customer_id, body.feature_keys)
    return [EntitlementCheckResponse.from_check(c) for c in checks]
