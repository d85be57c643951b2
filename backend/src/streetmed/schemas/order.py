"""Order schemas for request/response validation."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class OrderItemCreate(BaseModel):
    """Schema for a single requested item."""

    item_name: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(..., gt=0)
    size: str | None = Field(default=None, max_length=50)
    is_custom: bool = False


class OrderCreate(BaseModel):
    """Schema for order creation request."""

    user_id: int | None = None
    delivery_address: str = Field(..., min_length=1, max_length=500)
    phone_number: str | None = Field(default=None, max_length=50)
    notes: str | None = None
    items: list[OrderItemCreate] = Field(..., min_length=1)


class OrderItemResponse(BaseModel):
    """Schema for order item response."""

    item_name: str
    quantity: int
    size: str | None
    is_custom: bool

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    """Schema for order response."""

    order_id: int
    user_id: int | None
    round_id: int | None
    status: str
    delivery_address: str
    phone_number: str | None
    notes: str | None
    request_time: datetime
    delivery_time: datetime | None
    items: list[OrderItemResponse]

    model_config = {"from_attributes": True}


class OrderListResponse(BaseModel):
    """Schema for order list response."""

    orders: list[OrderResponse]
    total: int


class OrderMutationResponse(BaseModel):
    """Schema for a successful order write."""

    status: Literal["success"] = "success"
    message: str
    order: OrderResponse


class OrderDeletedResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str
    order_id: int


class OrderStatusUpdate(BaseModel):
    """Schema for administrative status change."""

    status: str


class RoundBindRequest(BaseModel):
    """Bind an order to a round, or unbind it with round_id=null."""

    round_id: int | None = None


class PendingOrderInfo(BaseModel):
    """One entry of the pending queue."""

    order_id: int
    request_time: datetime
    waiting_hours: int
    priority: int
    delivery_address: str
    phone_number: str | None
    notes: str | None
    round_id: int | None
    items: list[OrderItemResponse]


class PendingOrdersResponse(BaseModel):
    """Page of the pending queue, oldest first."""

    orders: list[PendingOrderInfo]
    page: int
    size: int
    total: int
    oldest_waiting_hours: int


class PendingStatisticsResponse(BaseModel):
    total_pending: int
    oldest_waiting_hours: int
    priority_counts: dict[int, int]
