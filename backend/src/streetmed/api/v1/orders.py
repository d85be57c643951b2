"""Order API endpoints: creation, pending queue, accept race and admin tools."""

from fastapi import APIRouter, Query, status

from streetmed.api.deps import (
    AdminUserId,
    CallerRole,
    ClientIp,
    CurrentUserId,
    DbSession,
    OptionalUserId,
    RedisServiceDep,
)
from streetmed.schemas.assignment import (
    AcceptOrderResponse,
    AssignmentMutationResponse,
    AssignmentResponse,
)
from streetmed.schemas.order import (
    OrderCreate,
    OrderDeletedResponse,
    OrderListResponse,
    OrderMutationResponse,
    OrderResponse,
    OrderStatusUpdate,
    PendingOrdersResponse,
    PendingStatisticsResponse,
    RoundBindRequest,
)
from streetmed.services.admission_service import AdmissionService
from streetmed.services.assignment_service import AssignmentService
from streetmed.services.order_service import OrderService
from streetmed.services.pending_queue_service import PendingQueueService

router = APIRouter()


@router.post("", response_model=OrderMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    db: DbSession,
    redis_service: RedisServiceDep,
    user_id: OptionalUserId,
    client_ip: ClientIp,
):
    """Place an order; callers without X-User-Id order as guests.

    Returns:
        Created order in PENDING status
    """
    if user_id is not None:
        order_data = order_data.model_copy(update={"user_id": user_id})

    service = OrderService(db, redis_service)
    order = await service.create(order_data, client_ip=client_ip)
    return OrderMutationResponse(
        message="Order created",
        order=OrderResponse.model_validate(order),
    )


@router.get("/pending", response_model=PendingOrdersResponse)
async def list_pending_orders(
    db: DbSession,
    redis_service: RedisServiceDep,
    user_id: CurrentUserId,
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
):
    """Pending orders nobody has accepted yet, oldest first."""
    service = PendingQueueService(db, redis_service)
    return await service.list_pending(page=page, size=size)


@router.get("/pending/stats", response_model=PendingStatisticsResponse)
async def pending_statistics(db: DbSession, user_id: CurrentUserId):
    service = PendingQueueService(db)
    return await service.get_statistics()


@router.get("/mine", response_model=OrderListResponse)
async def get_my_orders(
    db: DbSession,
    user_id: CurrentUserId,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
):
    """Get current user's orders."""
    service = OrderService(db)
    orders, total = await service.get_user_orders(user_id=user_id, skip=skip, limit=limit)
    return OrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        total=total,
    )


@router.get("", response_model=OrderListResponse)
async def list_orders(
    db: DbSession,
    admin_id: AdminUserId,
    status_filter: str | None = Query(None, alias="status"),
    user_id: int | None = Query(None),
    round_id: int | None = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
):
    """List all orders (admin only)."""
    service = OrderService(db)
    orders, total = await service.list_orders(
        status=status_filter,
        user_id=user_id,
        round_id=round_id,
        skip=skip,
        limit=limit,
    )
    return OrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        total=total,
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, db: DbSession):
    service = OrderService(db)
    return OrderResponse.model_validate(await service.get(order_id))


@router.post("/{order_id}/cancel", response_model=OrderMutationResponse)
async def cancel_order(
    order_id: int,
    db: DbSession,
    redis_service: RedisServiceDep,
    user_id: OptionalUserId,
    role: CallerRole,
):
    """Cancel an order.

    Admins may cancel any order and volunteers any order, guest orders
    included; other callers only their own.
    """
    service = OrderService(db, redis_service)
    order = await service.cancel(order_id, requested_by=user_id, role=role)
    return OrderMutationResponse(
        message=f"Order {order_id} cancelled",
        order=OrderResponse.model_validate(order),
    )


@router.post("/{order_id}/accept", response_model=AcceptOrderResponse)
async def accept_order(
    order_id: int,
    db: DbSession,
    redis_service: RedisServiceDep,
    volunteer_id: CurrentUserId,
):
    """Accept a pending order.

    Exactly one of any number of concurrent callers wins; the others get a
    409 OrderAlreadyAccepted. Repeating a won accept returns the existing
    assignment with already_accepted=true.
    """
    service = AssignmentService(db, redis_service)
    assignment, created = await service.accept(order_id, volunteer_id)
    return AcceptOrderResponse(
        message="Order accepted" if created else "You have already accepted this order",
        already_accepted=not created,
        assignment=AssignmentResponse.model_validate(assignment),
    )


@router.delete("/{order_id}/assignment", response_model=AssignmentMutationResponse)
async def cancel_assignment(
    order_id: int,
    db: DbSession,
    redis_service: RedisServiceDep,
    volunteer_id: CurrentUserId,
):
    """Give an accepted order back to the pending queue."""
    service = AssignmentService(db, redis_service)
    assignment = await service.cancel_assignment(order_id, volunteer_id)
    return AssignmentMutationResponse(
        message=f"Assignment cancelled, order {order_id} is pending again",
        assignment=AssignmentResponse.model_validate(assignment),
    )


@router.put("/{order_id}/status", response_model=OrderMutationResponse)
async def update_order_status(
    order_id: int,
    update: OrderStatusUpdate,
    db: DbSession,
    redis_service: RedisServiceDep,
    admin_id: AdminUserId,
):
    """Move an order along its lifecycle (admin only)."""
    service = OrderService(db, redis_service)
    order = await service.transition(order_id, update.status.upper())
    return OrderMutationResponse(
        message=f"Order {order_id} is now {order.status}",
        order=OrderResponse.model_validate(order),
    )


@router.put("/{order_id}/round", response_model=OrderMutationResponse)
async def bind_order_round(
    order_id: int,
    request: RoundBindRequest,
    db: DbSession,
    redis_service: RedisServiceDep,
    admin_id: AdminUserId,
):
    """Bind an order to a round, or unbind it with round_id=null (admin only)."""
    service = AdmissionService(db, redis_service)
    order = await service.bind_order_to_round(order_id, request.round_id)
    if request.round_id is None:
        message = f"Order {order_id} unbound"
    else:
        message = f"Order {order_id} bound to round {request.round_id}"
    return OrderMutationResponse(message=message, order=OrderResponse.model_validate(order))


@router.delete("/{order_id}", response_model=OrderDeletedResponse)
async def delete_order(order_id: int, db: DbSession, admin_id: AdminUserId):
    """Delete a completed or cancelled order (admin only)."""
    service = OrderService(db)
    await service.delete(order_id)
    return OrderDeletedResponse(message=f"Order {order_id} deleted", order_id=order_id)
