"""Pending queue: oldest-first read projection of orders waiting for a volunteer.

Pages may be served from a Redis snapshot. Every order write bumps the queue
generation so fresh pages are computed afterwards; a page that survives a
missed invalidation is at most PENDING_QUEUE_CACHE_TTL seconds old.
"""

import logging
from datetime import datetime

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.core.config import settings
from streetmed.models.assignment import AssignmentStatus, OrderAssignment
from streetmed.models.base import utcnow
from streetmed.models.order import Order, OrderStatus
from streetmed.schemas.order import (
    OrderItemResponse,
    PendingOrderInfo,
    PendingOrdersResponse,
    PendingStatisticsResponse,
)
from streetmed.services.redis_service import RedisService

logger = logging.getLogger(__name__)

# Priority 1 = critical (72h+), 2 = high (48h+), 3 = medium (24h+), 4 = normal
PRIORITY_THRESHOLDS = ((72, 1), (48, 2), (24, 3))
NORMAL_PRIORITY = 4


def calculate_priority(waiting_hours: int) -> int:
    """Priority bucket for an order that has waited this many hours."""
    for threshold, priority in PRIORITY_THRESHOLDS:
        if waiting_hours >= threshold:
            return priority
    return NORMAL_PRIORITY


def waiting_hours_since(request_time: datetime, now: datetime) -> int:
    return max(0, int((now - request_time).total_seconds() // 3600))


async def invalidate_pending_queue(redis_service: RedisService | None) -> None:
    """Drop cached pending pages after an order write."""
    if redis_service is None:
        return
    try:
        await redis_service.bump_pending_generation()
    except Exception as e:
        logger.warning(f"Pending queue invalidation failed, pages expire by TTL: {e}")


def _no_active_assignment():
    return ~exists().where(
        OrderAssignment.order_id == Order.order_id,
        OrderAssignment.status.in_(AssignmentStatus.ACTIVE),
    )


class PendingQueueService:
    """Service class for the pending queue projection."""

    def __init__(
        self,
        db: AsyncSession,
        redis_service: RedisService | None = None,
        cache_ttl: int | None = None,
    ):
        self.db = db
        self.redis_service = redis_service
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.PENDING_QUEUE_CACHE_TTL

    async def list_pending(self, page: int = 0, size: int = 20) -> PendingOrdersResponse:
        """Get one page of pending orders, oldest first.

        Args:
            page: Zero-based page number
            size: Page size

        Returns:
            Page with totals and the age of the oldest waiting order
        """
        if self.redis_service is None or self.cache_ttl <= 0:
            return await self._query_pending(page, size)

        try:
            generation = await self.redis_service.get_pending_generation()
            cached = await self.redis_service.get_cached_pending_page(generation, page, size)
        except Exception as e:
            logger.warning(f"Pending queue cache unavailable, reading database: {e}")
            return await self._query_pending(page, size)

        if cached is not None:
            return PendingOrdersResponse.model_validate(cached)

        response = await self._query_pending(page, size)
        try:
            await self.redis_service.cache_pending_page(
                generation, page, size, response.model_dump(mode="json"), self.cache_ttl
            )
        except Exception as e:
            logger.warning(f"Failed to cache pending queue page {page}: {e}")
        return response

    async def _query_pending(self, page: int, size: int) -> PendingOrdersResponse:
        now = utcnow()
        filters = (Order.status == OrderStatus.PENDING, _no_active_assignment())

        count_result = await self.db.execute(
            select(func.count(Order.order_id)).where(*filters)
        )
        total = count_result.scalar_one()

        result = await self.db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.request_time.asc(), Order.order_id.asc())
            .offset(page * size)
            .limit(size)
        )
        orders = list(result.scalars().all())

        oldest_result = await self.db.execute(
            select(func.min(Order.request_time)).where(*filters)
        )
        oldest = oldest_result.scalar_one_or_none()

        return PendingOrdersResponse(
            orders=[self._to_info(order, now) for order in orders],
            page=page,
            size=size,
            total=total,
            oldest_waiting_hours=waiting_hours_since(oldest, now) if oldest else 0,
        )

    @staticmethod
    def _to_info(order: Order, now: datetime) -> PendingOrderInfo:
        waiting = waiting_hours_since(order.request_time, now)
        return PendingOrderInfo(
            order_id=order.order_id,
            request_time=order.request_time,
            waiting_hours=waiting,
            priority=calculate_priority(waiting),
            delivery_address=order.delivery_address,
            phone_number=order.phone_number,
            notes=order.notes,
            round_id=order.round_id,
            items=[OrderItemResponse.model_validate(item) for item in order.items],
        )

    async def get_statistics(self) -> PendingStatisticsResponse:
        """Pending totals broken down by priority bucket."""
        now = utcnow()
        result = await self.db.execute(
            select(Order.request_time).where(
                Order.status == OrderStatus.PENDING, _no_active_assignment()
            )
        )
        request_times = list(result.scalars().all())

        counts = {priority: 0 for priority in (1, 2, 3, NORMAL_PRIORITY)}
        for request_time in request_times:
            counts[calculate_priority(waiting_hours_since(request_time, now))] += 1

        oldest = min(request_times) if request_times else None
        return PendingStatisticsResponse(
            total_pending=len(request_times),
            oldest_waiting_hours=waiting_hours_since(oldest, now) if oldest else 0,
            priority_counts=counts,
        )
