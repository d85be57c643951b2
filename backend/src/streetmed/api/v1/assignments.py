"""Volunteer assignment API endpoints."""

from datetime import timedelta

from fastapi import APIRouter, Query

from streetmed.api.deps import AdminUserId, CurrentUserId, DbSession, RedisServiceDep
from streetmed.schemas.assignment import (
    AssignmentMutationResponse,
    AssignmentResponse,
    AssignmentWithOrder,
    MyAssignmentsResponse,
    ReclaimRequest,
    ReclaimResponse,
)
from streetmed.schemas.order import OrderItemResponse
from streetmed.services.assignment_service import AssignmentService

router = APIRouter()


@router.get("/mine", response_model=MyAssignmentsResponse)
async def get_my_assignments(
    db: DbSession,
    volunteer_id: CurrentUserId,
    active_only: bool = Query(False),
):
    """Assignments held by the calling volunteer, with delivery details."""
    service = AssignmentService(db)
    pairs, total_active, total_completed = await service.list_my_assignments(
        volunteer_id, active_only=active_only
    )

    assignments = []
    for assignment, order in pairs:
        entry = AssignmentWithOrder.model_validate(assignment)
        if order is not None:
            entry.delivery_address = order.delivery_address
            entry.phone_number = order.phone_number
            entry.notes = order.notes
            entry.request_time = order.request_time
            entry.items = [OrderItemResponse.model_validate(item) for item in order.items]
        assignments.append(entry)

    return MyAssignmentsResponse(
        assignments=assignments,
        total_active=total_active,
        total_completed=total_completed,
    )


@router.put("/{assignment_id}/start", response_model=AssignmentMutationResponse)
async def start_assignment(assignment_id: int, db: DbSession, volunteer_id: CurrentUserId):
    service = AssignmentService(db)
    assignment = await service.start(assignment_id, volunteer_id)
    return AssignmentMutationResponse(
        message="Delivery started",
        assignment=AssignmentResponse.model_validate(assignment),
    )


@router.put("/{assignment_id}/complete", response_model=AssignmentMutationResponse)
async def complete_assignment(
    assignment_id: int,
    db: DbSession,
    redis_service: RedisServiceDep,
    volunteer_id: CurrentUserId,
):
    """Mark a delivery done; the order becomes COMPLETED."""
    service = AssignmentService(db, redis_service)
    assignment = await service.complete(assignment_id, volunteer_id)
    return AssignmentMutationResponse(
        message="Delivery completed",
        assignment=AssignmentResponse.model_validate(assignment),
    )


@router.post("/reclaim", response_model=ReclaimResponse)
async def reclaim_stale_assignments(
    request: ReclaimRequest,
    db: DbSession,
    redis_service: RedisServiceDep,
    admin_id: AdminUserId,
):
    """Return orders accepted but never started back to the pending queue (admin only)."""
    service = AssignmentService(db, redis_service)
    released = await service.release_stale_assignments(
        timedelta(hours=request.older_than_hours)
    )
    return ReclaimResponse(
        message=f"Released {released} assignments older than {request.older_than_hours}h",
        released=released,
    )
