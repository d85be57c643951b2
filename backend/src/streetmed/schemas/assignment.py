"""Assignment schemas for request/response validation."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from streetmed.schemas.order import OrderItemResponse


class AssignmentResponse(BaseModel):
    """Schema for assignment response."""

    assignment_id: int
    order_id: int
    volunteer_id: int
    status: str
    accepted_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None

    model_config = {"from_attributes": True}


class AcceptOrderResponse(BaseModel):
    """Result of an accept attempt that the caller won (or already held)."""

    status: Literal["success"] = "success"
    message: str
    already_accepted: bool = False
    assignment: AssignmentResponse


class AssignmentMutationResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str
    assignment: AssignmentResponse


class AssignmentWithOrder(AssignmentResponse):
    """Assignment enriched with the delivery details of its order."""

    delivery_address: str | None = None
    phone_number: str | None = None
    notes: str | None = None
    request_time: datetime | None = None
    items: list[OrderItemResponse] = []


class MyAssignmentsResponse(BaseModel):
    assignments: list[AssignmentWithOrder]
    total_active: int
    total_completed: int


class ReclaimRequest(BaseModel):
    """Release ACCEPTED assignments older than this many hours."""

    older_than_hours: int = Field(..., gt=0)


class ReclaimResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str
    released: int
