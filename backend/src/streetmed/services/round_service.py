"""Round registry: round CRUD, lifecycle and cancellation."""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.core.config import settings
from streetmed.models.base import utcnow
from streetmed.models.order import Order, OrderStatus
from streetmed.models.round import Round, RoundSignup, RoundStatus, SignupStatus
from streetmed.schemas.round import RoundCreate, RoundUpdate
from streetmed.services.admission_service import (
    count_bound_orders,
    count_participants,
    invalidate_round_status,
    lock_round,
)
from streetmed.services.errors import (
    CapacityBelowUsage,
    ConcurrencyError,
    InvalidTransition,
    RoundNotFound,
    ValidationFailed,
)
from streetmed.services.pending_queue_service import invalidate_pending_queue
from streetmed.services.redis_service import RedisService

logger = logging.getLogger(__name__)

ROUND_TRANSITIONS: dict[str, frozenset[str]] = {
    RoundStatus.SCHEDULED: frozenset({RoundStatus.IN_PROGRESS, RoundStatus.CANCELLED}),
    RoundStatus.IN_PROGRESS: frozenset({RoundStatus.COMPLETED, RoundStatus.CANCELLED}),
    RoundStatus.COMPLETED: frozenset(),
    RoundStatus.CANCELLED: frozenset(),
}


class RoundService:
    """Service class for round operations."""

    def __init__(self, db: AsyncSession, redis_service: RedisService | None = None):
        self.db = db
        self.redis_service = redis_service

    async def get_round_by_id(self, round_id: int) -> Round | None:
        result = await self.db.execute(
            select(Round)
            .where(Round.round_id == round_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, round_id: int) -> Round:
        round_ = await self.get_round_by_id(round_id)
        if round_ is None:
            raise RoundNotFound(f"Round {round_id} not found")
        return round_

    async def list_rounds(
        self,
        status: str | None = None,
        upcoming_only: bool = False,
        skip: int = 0,
        limit: int = 100,
    ) -> tuple[list[Round], int]:
        """List rounds by start time.

        Args:
            status: Filter by status
            upcoming_only: Only rounds that have not started yet
            skip: Pagination offset
            limit: Pagination limit

        Returns:
            Tuple of (rounds list, total count)
        """
        filters = []
        if status is not None:
            filters.append(Round.status == status)
        if upcoming_only:
            filters.append(Round.start_time > utcnow())

        count_result = await self.db.execute(
            select(func.count(Round.round_id)).where(*filters)
        )
        total = count_result.scalar_one()

        result = await self.db.execute(
            select(Round)
            .where(*filters)
            .order_by(Round.start_time.asc(), Round.round_id.asc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def create(self, round_data: RoundCreate) -> Round:
        order_capacity = round_data.order_capacity
        if order_capacity is None:
            order_capacity = settings.DEFAULT_ORDER_CAPACITY

        round_ = Round(
            title=round_data.title,
            description=round_data.description,
            start_time=round_data.start_time,
            end_time=round_data.end_time,
            location=round_data.location,
            max_participants=round_data.max_participants,
            order_capacity=order_capacity,
            status=RoundStatus.SCHEDULED,
        )
        self.db.add(round_)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Round {round_.round_id} created: {round_.title} at {round_.start_time}, "
            f"{round_.max_participants} participants, {order_capacity} orders"
        )
        return round_

    async def update(self, round_id: int, round_data: RoundUpdate) -> Round:
        """Apply a partial update under the round guard.

        Raises:
            RoundNotFound: Round does not exist
            InvalidTransition: Round is COMPLETED or CANCELLED
            ValidationFailed: Resulting window ends before it starts
            CapacityBelowUsage: A capacity would drop below current usage
        """
        changes = round_data.model_dump(exclude_unset=True)
        if not changes:
            return await self.get(round_id)

        try:
            round_ = await lock_round(self.db, round_id)
            if round_.status in RoundStatus.TERMINAL:
                raise InvalidTransition(f"Round {round_id} is {round_.status}")

            start_time = changes.get("start_time", round_.start_time)
            end_time = changes.get("end_time", round_.end_time)
            if end_time <= start_time:
                raise ValidationFailed("end_time must be after start_time")

            for field in ("title", "location", "max_participants", "order_capacity"):
                if field in changes and changes[field] is None:
                    raise ValidationFailed(f"{field} cannot be null")

            if "order_capacity" in changes:
                bound = await count_bound_orders(self.db, round_id)
                if changes["order_capacity"] < bound:
                    raise CapacityBelowUsage(
                        f"Round {round_id} already has {bound} orders bound"
                    )
            if "max_participants" in changes:
                confirmed = await count_participants(self.db, round_id)
                if changes["max_participants"] < confirmed:
                    raise CapacityBelowUsage(
                        f"Round {round_id} already has {confirmed} confirmed participants"
                    )

            await self.db.execute(
                update(Round)
                .where(Round.round_id == round_id)
                .values(**changes, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Round {round_id} updated: {sorted(changes)}")
        invalidate_round_status(round_id)
        return await self.get(round_id)

    async def transition(self, round_id: int, new_status: str) -> Round:
        """Move a round along its lifecycle; CANCELLED goes through cancel()."""
        if new_status not in ROUND_TRANSITIONS:
            raise ValidationFailed(f"Unknown round status {new_status}")
        if new_status == RoundStatus.CANCELLED:
            return await self.cancel(round_id)

        round_ = await self.get(round_id)
        current = round_.status
        if new_status not in ROUND_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Round {round_id} cannot move from {current} to {new_status}"
            )

        try:
            await self._status_cas(round_id, current, new_status)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Round {round_id} moved {current} -> {new_status}")
        invalidate_round_status(round_id)
        return await self.get(round_id)

    async def cancel(self, round_id: int) -> Round:
        """Cancel a round.

        Active sign-ups become CANCELLED and non-terminal orders bound to the
        round are unbound so auto-assign can place them again. Assignments
        are left alone. Cancelling a cancelled round is a no-op.

        Raises:
            RoundNotFound: Round does not exist
            InvalidTransition: Round already completed
        """
        round_ = await self.get(round_id)
        current = round_.status
        if current == RoundStatus.CANCELLED:
            return round_
        if RoundStatus.CANCELLED not in ROUND_TRANSITIONS[current]:
            raise InvalidTransition(f"Round {round_id} is {current} and cannot be cancelled")

        now = utcnow()
        try:
            await lock_round(self.db, round_id)
            await self._status_cas(round_id, current, RoundStatus.CANCELLED)
            signups = await self.db.execute(
                update(RoundSignup)
                .where(RoundSignup.round_id == round_id)
                .where(RoundSignup.status.in_(SignupStatus.ACTIVE))
                .values(status=SignupStatus.CANCELLED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            orders = await self.db.execute(
                update(Order)
                .where(Order.round_id == round_id)
                .where(Order.status.not_in(OrderStatus.TERMINAL))
                .values(round_id=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Round {round_id} cancelled (was {current}): {signups.rowcount} signups "
            f"cancelled, {orders.rowcount} orders unbound"
        )
        invalidate_round_status(round_id)
        if orders.rowcount:
            await invalidate_pending_queue(self.redis_service)
        return await self.get(round_id)

    async def _status_cas(self, round_id: int, expected: str, new_status: str) -> None:
        result = await self.db.execute(
            update(Round)
            .where(Round.round_id == round_id)
            .where(Round.status == expected)
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyError(f"Round {round_id} is no longer {expected}, refresh and retry")
