"""Tests for the order store and its status state machine."""

import pytest
from sqlalchemy import select
from unittest.mock import AsyncMock, MagicMock

from streetmed.models import (
    AssignmentStatus,
    GUEST_USER_ID,
    Order,
    OrderAssignment,
    OrderStatus,
    UserRole,
)
from streetmed.schemas.order import OrderCreate, OrderItemCreate
from streetmed.services.assignment_service import AssignmentService
from streetmed.services.errors import (
    InvalidTransition,
    NotOwner,
    NotTerminal,
    OrderNotFound,
    RateLimitExceeded,
    ValidationFailed,
)
from streetmed.services.order_service import OrderService, can_transition
from streetmed.services.redis_service import RedisService


def _order_payload(user_id=None) -> OrderCreate:
    return OrderCreate(
        user_id=user_id,
        delivery_address="Under the 10th Street bridge",
        phone_number="412-555-0199",
        notes="Ask for Sam",
        items=[
            OrderItemCreate(item_name="Sleeping bag", quantity=1),
            OrderItemCreate(item_name="Gloves", quantity=2, size="M", is_custom=True),
        ],
    )


class TestStateMachine:
    """Test the allowed order status edges."""

    def test_forward_edges(self):
        assert can_transition(OrderStatus.PENDING, OrderStatus.PROCESSING)
        assert can_transition(OrderStatus.PROCESSING, OrderStatus.COMPLETED)

    def test_cancel_from_non_terminal(self):
        assert can_transition(OrderStatus.PENDING, OrderStatus.CANCELLED)
        assert can_transition(OrderStatus.PROCESSING, OrderStatus.CANCELLED)

    def test_no_skipping_or_leaving_terminal(self):
        assert not can_transition(OrderStatus.PENDING, OrderStatus.COMPLETED)
        assert not can_transition(OrderStatus.COMPLETED, OrderStatus.PENDING)
        assert not can_transition(OrderStatus.CANCELLED, OrderStatus.PENDING)
        assert not can_transition(OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    def test_release_edge_not_public(self):
        """PROCESSING -> PENDING only happens through assignment cancellation."""
        assert not can_transition(OrderStatus.PROCESSING, OrderStatus.PENDING)


class TestCreate:
    """Test order creation."""

    @pytest.mark.asyncio
    async def test_create_registered_user_order(self, db):
        service = OrderService(db)

        order = await service.create(_order_payload(user_id=7))

        assert order.order_id is not None
        assert order.status == OrderStatus.PENDING
        assert order.user_id == 7
        assert order.request_time is not None
        assert order.delivery_time is None
        assert [item.item_name for item in order.items] == ["Sleeping bag", "Gloves"]
        assert order.items[1].is_custom is True

    @pytest.mark.asyncio
    async def test_create_guest_order_uses_sentinel(self, db):
        service = OrderService(db)

        order = await service.create(_order_payload(), client_ip="10.0.0.8")

        assert order.user_id == GUEST_USER_ID
        assert order.is_guest
        assert order.client_ip == "10.0.0.8"

    def test_empty_items_rejected_by_schema(self):
        with pytest.raises(ValueError):
            OrderCreate(delivery_address="Somewhere", items=[])

    @pytest.mark.asyncio
    async def test_rate_limited_user(self, db, mock_redis):
        """Sliding window refusal surfaces as RateLimitExceeded."""
        mock_redis.register_script = MagicMock(return_value=AsyncMock(return_value=[0, 1200]))
        service = OrderService(db, RedisService(mock_redis))

        with pytest.raises(RateLimitExceeded) as exc_info:
            await service.create(_order_payload(user_id=3))

        assert "1200" in exc_info.value.message
        result = await db.execute(select(Order))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_pending_cap_for_guests(self, db, mock_redis, make_order):
        for _ in range(3):
            await make_order(user_id=GUEST_USER_ID, client_ip="10.0.0.9")
        service = OrderService(db, RedisService(mock_redis))

        with pytest.raises(RateLimitExceeded):
            await service.create(_order_payload(), client_ip="10.0.0.9")

        # Another address is unaffected
        order = await service.create(_order_payload(), client_ip="10.0.0.10")
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_guest_without_ip_rejected_when_limiting(self, db, mock_redis):
        service = OrderService(db, RedisService(mock_redis))

        with pytest.raises(ValidationFailed):
            await service.create(_order_payload())

    @pytest.mark.asyncio
    async def test_create_bumps_pending_generation(self, db, mock_redis):
        service = OrderService(db, RedisService(mock_redis))

        await service.create(_order_payload(user_id=4))

        mock_redis.incr.assert_called_once_with("pending_queue:gen")


class TestTransitions:
    """Test transition, cancel and delete."""

    @pytest.mark.asyncio
    async def test_get_missing_order(self, db):
        with pytest.raises(OrderNotFound):
            await OrderService(db).get(999)

    @pytest.mark.asyncio
    async def test_transition_pending_to_completed_rejected(self, db, make_order):
        order_id = await make_order()

        with pytest.raises(InvalidTransition):
            await OrderService(db).transition(order_id, OrderStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_transition_bumps_version_and_sets_delivery_time(self, db, make_order):
        order_id = await make_order(status=OrderStatus.PROCESSING)
        service = OrderService(db)
        before = await service.get(order_id)
        version = before.version

        order = await service.transition(order_id, OrderStatus.COMPLETED)

        assert order.status == OrderStatus.COMPLETED
        assert order.delivery_time is not None
        assert order.version == version + 1

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, db, make_order):
        order_id = await make_order()

        with pytest.raises(ValidationFailed):
            await OrderService(db).transition(order_id, "SHIPPED")

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, db, make_order):
        order_id = await make_order()
        service = OrderService(db)

        first = await service.cancel(order_id, requested_by=1)
        version_after_cancel = first.version
        second = await service.cancel(order_id, requested_by=1)

        assert first.status == OrderStatus.CANCELLED
        assert second.status == OrderStatus.CANCELLED
        assert second.version == version_after_cancel

    @pytest.mark.asyncio
    async def test_cancel_completed_rejected(self, db, make_order):
        order_id = await make_order(status=OrderStatus.COMPLETED)

        with pytest.raises(InvalidTransition):
            await OrderService(db).cancel(order_id, role=UserRole.ADMIN)

    @pytest.mark.asyncio
    async def test_cancel_someone_elses_order(self, db, make_order):
        order_id = await make_order(user_id=11)

        with pytest.raises(NotOwner):
            await OrderService(db).cancel(order_id, requested_by=12)

    @pytest.mark.asyncio
    async def test_anonymous_cancel_rejected(self, db, make_order):
        order_id = await make_order(user_id=11)

        with pytest.raises(NotOwner):
            await OrderService(db).cancel(order_id)

        order = await OrderService(db).get(order_id)
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_guest_order_cancel_permissions(self, db, make_order):
        order_id = await make_order(user_id=GUEST_USER_ID, client_ip="10.0.0.8")
        service = OrderService(db)

        with pytest.raises(NotOwner):
            await service.cancel(order_id, requested_by=12)
        with pytest.raises(NotOwner):
            await service.cancel(order_id, role=UserRole.VOLUNTEER)

        order = await service.cancel(order_id, requested_by=30, role=UserRole.VOLUNTEER)
        assert order.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_volunteer_cancels_registered_order(self, db, make_order):
        order_id = await make_order(user_id=11)

        order = await OrderService(db).cancel(order_id, requested_by=30, role=UserRole.VOLUNTEER)

        assert order.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_closes_active_assignment(self, db, make_order):
        order_id = await make_order()
        await AssignmentService(db).accept(order_id, volunteer_id=50)

        await OrderService(db).cancel(order_id, role=UserRole.ADMIN)

        result = await db.execute(
            select(OrderAssignment)
            .where(OrderAssignment.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        assignment = result.scalar_one()
        assert assignment.status == AssignmentStatus.CANCELLED
        assert assignment.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_delete_processing_order_fails(self, db, make_order):
        order_id = await make_order(status=OrderStatus.PROCESSING)
        service = OrderService(db)

        with pytest.raises(NotTerminal):
            await service.delete(order_id)

        order = await service.get(order_id)
        assert order.status == OrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_delete_keeps_assignment_audit_trail(self, db, make_order):
        order_id = await make_order()
        assignment, _ = await AssignmentService(db).accept(order_id, volunteer_id=51)
        service = OrderService(db)
        await service.cancel(order_id, role=UserRole.ADMIN)

        await service.delete(order_id)

        assert await service.get_order_by_id(order_id, refresh=True) is None
        result = await db.execute(
            select(OrderAssignment).where(
                OrderAssignment.assignment_id == assignment.assignment_id
            )
        )
        assert result.scalar_one_or_none() is not None


class TestListing:
    """Test order listing."""

    @pytest.mark.asyncio
    async def test_user_history_and_filters(self, db, make_order):
        await make_order(user_id=1)
        await make_order(user_id=1, status=OrderStatus.CANCELLED)
        await make_order(user_id=2)
        service = OrderService(db)

        mine, total = await service.get_user_orders(1)
        assert total == 2
        assert {o.user_id for o in mine} == {1}

        pending, pending_total = await service.list_orders(status=OrderStatus.PENDING)
        assert pending_total == 2
        assert all(o.status == OrderStatus.PENDING for o in pending)
