"""Pydantic schemas for request/response validation."""

from streetmed.schemas.assignment import (
    AcceptOrderResponse,
    AssignmentMutationResponse,
    AssignmentResponse,
    MyAssignmentsResponse,
)
from streetmed.schemas.order import (
    OrderCreate,
    OrderItemCreate,
    OrderListResponse,
    OrderMutationResponse,
    OrderResponse,
    PendingOrdersResponse,
)
from streetmed.schemas.round import (
    RoundCapacityStatus,
    RoundCreate,
    RoundListResponse,
    RoundResponse,
    RoundUpdate,
    SignupResponse,
)

__all__ = [
    "OrderCreate",
    "OrderItemCreate",
    "OrderResponse",
    "OrderListResponse",
    "OrderMutationResponse",
    "PendingOrdersResponse",
    "AssignmentResponse",
    "AcceptOrderResponse",
    "AssignmentMutationResponse",
    "MyAssignmentsResponse",
    "RoundCreate",
    "RoundUpdate",
    "RoundResponse",
    "RoundListResponse",
    "RoundCapacityStatus",
    "SignupResponse",
]
