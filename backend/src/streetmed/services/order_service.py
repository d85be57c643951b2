"""Order store: creation, status lifecycle, cancellation and deletion."""

import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.core.config import settings
from streetmed.models.assignment import AssignmentStatus, OrderAssignment
from streetmed.models.base import UserRole, utcnow
from streetmed.models.order import GUEST_USER_ID, Order, OrderItem, OrderStatus
from streetmed.schemas.order import OrderCreate
from streetmed.services.errors import (
    ConcurrencyError,
    InvalidTransition,
    NotOwner,
    NotTerminal,
    OrderNotFound,
    RateLimitExceeded,
    ValidationFailed,
)
from streetmed.services.pending_queue_service import invalidate_pending_queue
from streetmed.services.redis_service import RedisService

logger = logging.getLogger(__name__)

# Edges reachable through transition(). PROCESSING -> PENDING is the release
# edge and is only taken by the assignment coordinator.
ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Assignment status an active assignment takes when its order goes terminal
_CLOSING_ASSIGNMENT_STATUS = {
    OrderStatus.COMPLETED: AssignmentStatus.COMPLETED,
    OrderStatus.CANCELLED: AssignmentStatus.CANCELLED,
}


def can_transition(current: str, new: str) -> bool:
    return new in ORDER_TRANSITIONS.get(current, frozenset())


class OrderService:
    """Service class for order operations."""

    def __init__(self, db: AsyncSession, redis_service: RedisService | None = None):
        self.db = db
        self.redis_service = redis_service

    async def get_order_by_id(self, order_id: int, refresh: bool = False) -> Order | None:
        """Get order by ID.

        Args:
            order_id: Order ID
            refresh: Overwrite any copy already held by the session

        Returns:
            Order or None if not found
        """
        stmt = select(Order).where(Order.order_id == order_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, order_id: int) -> Order:
        order = await self.get_order_by_id(order_id, refresh=True)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def list_orders(
        self,
        status: str | None = None,
        user_id: int | None = None,
        round_id: int | None = None,
        skip: int = 0,
        limit: int = 100,
    ) -> tuple[list[Order], int]:
        """List orders, newest first, with optional filters.

        Returns:
            Tuple of (orders list, total count)
        """
        filters = []
        if status is not None:
            filters.append(Order.status == status)
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if round_id is not None:
            filters.append(Order.round_id == round_id)

        count_result = await self.db.execute(
            select(func.count(Order.order_id)).where(*filters)
        )
        total = count_result.scalar_one()

        result = await self.db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.request_time.desc(), Order.order_id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_user_orders(
        self, user_id: int, skip: int = 0, limit: int = 100
    ) -> tuple[list[Order], int]:
        """Order history for a registered user."""
        return await self.list_orders(user_id=user_id, skip=skip, limit=limit)

    # ==================== Creation ====================

    async def create(self, order_data: OrderCreate, client_ip: str | None = None) -> Order:
        """Create a PENDING order.

        Args:
            order_data: Validated order payload
            client_ip: Caller address, used to rate limit guests

        Returns:
            Created order with items loaded

        Raises:
            ValidationFailed: No items, or a guest order without an address to key on
            RateLimitExceeded: Creation or pending-order limit reached
        """
        if not order_data.items:
            raise ValidationFailed("Order must contain at least one item")

        user_id = order_data.user_id if order_data.user_id is not None else GUEST_USER_ID

        if self.redis_service is not None:
            await self._check_rate_limits(user_id, client_ip)

        order = Order(
            user_id=user_id,
            client_ip=client_ip,
            status=OrderStatus.PENDING,
            delivery_address=order_data.delivery_address,
            phone_number=order_data.phone_number,
            notes=order_data.notes,
            request_time=utcnow(),
            items=[
                OrderItem(
                    item_name=item.item_name,
                    quantity=item.quantity,
                    size=item.size,
                    is_custom=item.is_custom,
                )
                for item in order_data.items
            ],
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order, attribute_names=["items"])

        logger.info(f"Order {order.order_id} created for user {user_id}")
        await invalidate_pending_queue(self.redis_service)
        return order

    async def _check_rate_limits(self, user_id: int, client_ip: str | None) -> None:
        if user_id == GUEST_USER_ID:
            if not client_ip:
                raise ValidationFailed("IP address is required for guest orders")
            identity = f"ip:{client_ip}"
            hourly_limit = settings.GUEST_ORDERS_PER_HOUR
            pending_limit = settings.GUEST_MAX_PENDING_ORDERS
            pending_filter = (Order.client_ip == client_ip) & (Order.user_id == GUEST_USER_ID)
        else:
            identity = f"user:{user_id}"
            hourly_limit = settings.USER_ORDERS_PER_HOUR
            pending_limit = settings.USER_MAX_PENDING_ORDERS
            pending_filter = Order.user_id == user_id

        pending_result = await self.db.execute(
            select(func.count(Order.order_id))
            .where(pending_filter)
            .where(Order.status == OrderStatus.PENDING)
        )
        if pending_result.scalar_one() >= pending_limit:
            raise RateLimitExceeded(
                f"Maximum pending orders limit reached: {pending_limit} orders"
            )

        allowed, retry_after = await self.redis_service.check_order_rate(
            identity, hourly_limit
        )
        if not allowed:
            raise RateLimitExceeded(
                f"Rate limit exceeded: maximum {hourly_limit} orders per hour, "
                f"retry in {retry_after}s"
            )

    # ==================== Lifecycle ====================

    async def transition(self, order_id: int, new_status: str) -> Order:
        """Move an order along an allowed status edge.

        Raises:
            OrderNotFound: Order does not exist
            InvalidTransition: Edge not in the order state machine
            ConcurrencyError: Status changed between read and write
        """
        if new_status not in OrderStatus.ALL:
            raise ValidationFailed(f"Unknown order status {new_status}")

        order = await self.get(order_id)
        current = order.status
        if not can_transition(current, new_status):
            raise InvalidTransition(
                f"Order {order_id} cannot move from {current} to {new_status}"
            )

        try:
            await self._compare_and_set(order_id, current, new_status)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order_id} moved {current} -> {new_status}")
        await invalidate_pending_queue(self.redis_service)
        return await self.get(order_id)

    async def cancel(
        self,
        order_id: int,
        requested_by: int | None = None,
        role: str | None = None,
    ) -> Order:
        """Cancel an order from any non-terminal state.

        Admins may cancel any order and volunteers any order they deliver
        for, guest orders included. Everyone else may only cancel their own
        registered order. Cancelling an already cancelled order succeeds
        without changes.

        Args:
            order_id: Order ID
            requested_by: Calling user, None for anonymous callers
            role: Calling user's role (UserRole)

        Raises:
            NotOwner: Caller may not cancel this order
            InvalidTransition: Order already completed
        """
        order = await self.get(order_id)
        self._check_cancel_permission(order, requested_by, role)

        current = order.status
        if current == OrderStatus.CANCELLED:
            return order
        if not can_transition(current, OrderStatus.CANCELLED):
            raise InvalidTransition(f"Order {order_id} is {current} and cannot be cancelled")

        try:
            await self._compare_and_set(order_id, current, OrderStatus.CANCELLED)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order_id} cancelled (was {current})")
        await invalidate_pending_queue(self.redis_service)
        return await self.get(order_id)

    @staticmethod
    def _check_cancel_permission(order: Order, requested_by: int | None, role: str | None) -> None:
        if role == UserRole.ADMIN:
            return
        if requested_by is None:
            raise NotOwner(f"Identify yourself to cancel order {order.order_id}")
        if role == UserRole.VOLUNTEER:
            return
        if order.is_guest:
            raise NotOwner(f"Only volunteers or admins can cancel guest order {order.order_id}")
        if order.user_id != requested_by:
            raise NotOwner(f"Order {order.order_id} belongs to another user")

    async def delete(self, order_id: int) -> None:
        """Delete a terminal order. Assignment rows are kept as audit trail.

        Raises:
            OrderNotFound: Order does not exist
            NotTerminal: Order is PENDING or PROCESSING
        """
        order = await self.get(order_id)
        if not order.is_terminal:
            raise NotTerminal(f"Order {order_id} is {order.status}")

        try:
            await self.db.execute(
                delete(OrderItem)
                .where(OrderItem.order_id == order_id)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(
                delete(Order)
                .where(Order.order_id == order_id)
                .where(Order.status.in_(OrderStatus.TERMINAL))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyError(f"Order {order_id} changed while deleting")
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order_id} deleted")

    async def _compare_and_set(self, order_id: int, expected: str, new_status: str) -> None:
        """Conditional status write; must run inside the caller's transaction."""
        values = {
            "status": new_status,
            "version": Order.version + 1,
            "updated_at": utcnow(),
        }
        if new_status == OrderStatus.COMPLETED:
            values["delivery_time"] = utcnow()

        result = await self.db.execute(
            update(Order)
            .where(Order.order_id == order_id)
            .where(Order.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyError(
                f"Order {order_id} is no longer {expected}, refresh and retry"
            )

        closing = _CLOSING_ASSIGNMENT_STATUS.get(new_status)
        if closing is not None:
            if closing == AssignmentStatus.COMPLETED:
                stamp = {"completed_at": utcnow()}
            else:
                stamp = {"cancelled_at": utcnow()}
            await self.db.execute(
                update(OrderAssignment)
                .where(OrderAssignment.order_id == order_id)
                .where(OrderAssignment.status.in_(AssignmentStatus.ACTIVE))
                .values(status=closing, **stamp)
                .execution_options(synchronize_session=False)
            )
