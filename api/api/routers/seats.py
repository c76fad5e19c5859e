"""Seat assignment endpoints.

Every mutation runs in the request's transaction; the capacity lock taken by
the seat service is released when that transaction commits.
"""

from __future__ import annotations

import logging

from entitlement_core.models import SeatUser
from fastapi import APIRouter, Response, status

from api.dependencies import SeatServiceDep
from api.schemas import (
    AssignSeatRequest,
    BulkSeatRequest,
    BulkSeatResponse,
    SeatAssignmentResponse,
    SeatUsageResponse,
    TransferSeatRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/customers/{customer_id}/seats",
    tags=["seats"],
)


@router.get("", response_model=list[SeatUsageResponse])
async def list_seat_usage(
    workspace_id: str,
    customer_id: str,
    service: SeatServiceDep,
) -> list[SeatUsageResponse]:
    """Seat usage for every numeric or unlimited feature of the customer."""
    summaries = await service.get_all_seat_usage(workspace_id, customer_id)
    return [SeatUsageResponse.from_summary(s) for s in summaries]


@router.get("/{feature_key}", response_model=SeatUsageResponse)
async def get_seat_usage(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    service: SeatServiceDep,
) -> SeatUsageResponse:
    summary = await service.get_seat_usage(workspace_id, customer_id, feature_key)
    return SeatUsageResponse.from_summary(summary)


@router.post("/{feature_key}", response_model=SeatAssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_seat(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    body: AssignSeatRequest,
    service: SeatServiceDep,
) -> SeatAssignmentResponse:
    """Seat a user.  Assigning an already-seated user returns the existing seat."""
    assignment = await service.assign_seat(
        workspace_id,
        customer_id,
        feature_key,
        body.user_id,
        user_email=body.user_email,
        user_name=body.user_name,
        expires_at=body.expires_at,
        metadata=body.metadata,
    )
    return SeatAssignmentResponse.from_assignment(assignment)


@router.delete("/{feature_key}/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unassign_seat(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    user_id: str,
    service: SeatServiceDep,
) -> Response:
    await service.unassign_seat(workspace_id, customer_id, feature_key, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{feature_key}/bulk", response_model=BulkSeatResponse)
async def bulk_update_seats(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    body: BulkSeatRequest,
    service: SeatServiceDep,
) -> BulkSeatResponse:
    """Release ``unassign`` first, then seat ``assign``.  Per-user failures are reported, not raised."""
    unassign_result = None
    if body.unassign:
        unassign_result = await service.bulk_unassign_seats(workspace_id, customer_id, feature_key, body.unassign)

    assign_result = None
    if body.assign:
        users = [SeatUser(user_id=u.user_id, user_email=u.user_email, user_name=u.user_name) for u in body.assign]
        assign_result = await service.bulk_assign_seats(workspace_id, customer_id, feature_key, users)

    return BulkSeatResponse.from_results(assign_result, unassign_result)


@router.post("/{feature_key}/transfer", response_model=SeatAssignmentResponse)
async def transfer_seat(
    workspace_id: str,
    customer_id: str,
    feature_key: str,
    body: TransferSeatRequest,
    service: SeatServiceDep,
) -> SeatAssignmentResponse:
    assignment = await service.transfer_seat(
        workspace_id,
        customer_id,
        feature_key,
        body.from_user_id,
        body.to_user_id,
        user_email=body.user_email,
        user_name=body.user_name,
        metadata=body.metadata,
    )
    return SeatAssignmentResponse.from_assignment(assignment)
