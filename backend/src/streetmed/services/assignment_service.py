"""Assignment coordinator: hands pending orders to volunteers.

The accept path is a compare-and-set on the order row:

    UPDATE orders SET status = 'PROCESSING' WHERE order_id = ? AND status = 'PENDING'

Exactly one of any number of concurrent callers sees rowcount == 1 and goes on
to write the assignment in the same transaction; the others re-read and get
OrderAlreadyAccepted. The partial unique index on active assignments backs
this up at the database level.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.models.assignment import AssignmentStatus, OrderAssignment
from streetmed.core.config import settings
from streetmed.models.base import utcnow
from streetmed.models.order import Order, OrderStatus
from streetmed.services.errors import (
    AssignmentNotFound,
    ConcurrencyError,
    InvalidTransition,
    NoActiveAssignment,
    NotOwner,
    OrderAlreadyAccepted,
    OrderNotFound,
    OrderNotPending,
    VolunteerAtCapacity,
)
from streetmed.services.pending_queue_service import invalidate_pending_queue
from streetmed.services.redis_service import RedisService

logger = logging.getLogger(__name__)


class AssignmentService:
    """Service class for volunteer assignment operations."""

    def __init__(
        self,
        db: AsyncSession,
        redis_service: RedisService | None = None,
        max_orders_per_volunteer: int | None = None,
    ):
        self.db = db
        self.redis_service = redis_service
        self.max_orders_per_volunteer = (
            max_orders_per_volunteer
            if max_orders_per_volunteer is not None
            else settings.MAX_ACTIVE_ORDERS_PER_VOLUNTEER
        )

    # ==================== Reads ====================

    async def _load_order(self, order_id: int) -> Order | None:
        result = await self.db.execute(
            select(Order)
            .where(Order.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_active_assignment(self, order_id: int) -> OrderAssignment | None:
        """The ACCEPTED or IN_PROGRESS assignment of an order, if any."""
        result = await self.db.execute(
            select(OrderAssignment)
            .where(OrderAssignment.order_id == order_id)
            .where(OrderAssignment.status.in_(AssignmentStatus.ACTIVE))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_assignment(self, assignment_id: int) -> OrderAssignment:
        result = await self.db.execute(
            select(OrderAssignment)
            .where(OrderAssignment.assignment_id == assignment_id)
            .execution_options(populate_existing=True)
        )
        assignment = result.scalar_one_or_none()
        if assignment is None:
            raise AssignmentNotFound(f"Assignment {assignment_id} not found")
        return assignment

    async def list_my_assignments(
        self, volunteer_id: int, active_only: bool = False
    ) -> tuple[list[tuple[OrderAssignment, Order | None]], int, int]:
        """Assignments held by a volunteer, newest first, with their orders.

        Returns:
            Tuple of ((assignment, order) pairs, total active, total completed).
            order is None when the order has since been deleted.
        """
        result = await self.db.execute(
            select(OrderAssignment)
            .where(OrderAssignment.volunteer_id == volunteer_id)
            .order_by(OrderAssignment.accepted_at.desc(), OrderAssignment.assignment_id.desc())
        )
        assignments = list(result.scalars().all())

        total_active = sum(1 for a in assignments if a.is_active)
        total_completed = sum(1 for a in assignments if a.status == AssignmentStatus.COMPLETED)

        if active_only:
            assignments = [a for a in assignments if a.is_active]

        orders: dict[int, Order] = {}
        order_ids = {a.order_id for a in assignments}
        if order_ids:
            order_result = await self.db.execute(
                select(Order).where(Order.order_id.in_(order_ids))
            )
            orders = {o.order_id: o for o in order_result.scalars().all()}

        return (
            [(a, orders.get(a.order_id)) for a in assignments],
            total_active,
            total_completed,
        )

    # ==================== Accept ====================

    async def accept(self, order_id: int, volunteer_id: int) -> tuple[OrderAssignment, bool]:
        """Accept a pending order for a volunteer.

        Args:
            order_id: Order ID
            volunteer_id: Volunteer claiming the order

        Returns:
            Tuple of (assignment, created). created is False when the caller
            already held the active assignment; nothing is written then.

        Raises:
            OrderNotFound: Order does not exist
            OrderAlreadyAccepted: Another volunteer holds the order
            OrderNotPending: Order is not PENDING and nobody holds it
            VolunteerAtCapacity: Volunteer already holds the per-round maximum
        """
        order = await self._load_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        existing = await self.get_active_assignment(order_id)
        if existing is not None:
            if existing.volunteer_id == volunteer_id:
                return existing, False
            raise OrderAlreadyAccepted()

        if order.status != OrderStatus.PENDING:
            raise OrderNotPending(f"Order {order_id} is {order.status}")
        if order.round_id is not None:
            await self._check_volunteer_capacity(order.round_id, volunteer_id)

        assignment = None
        try:
            result = await self.db.execute(
                update(Order)
                .where(Order.order_id == order_id)
                .where(Order.status == OrderStatus.PENDING)
                .values(
                    status=OrderStatus.PROCESSING,
                    version=Order.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                assignment = OrderAssignment(
                    order_id=order_id,
                    volunteer_id=volunteer_id,
                    status=AssignmentStatus.ACCEPTED,
                    accepted_at=utcnow(),
                )
                self.db.add(assignment)
                await self.db.commit()
            else:
                await self.db.rollback()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Volunteer {volunteer_id} lost accept race for order {order_id} (index)")
            raise OrderAlreadyAccepted()
        except Exception:
            await self.db.rollback()
            raise

        if assignment is None:
            return await self._resolve_lost_race(order_id, volunteer_id)

        logger.info(
            f"Order {order_id} accepted by volunteer {volunteer_id} "
            f"(assignment {assignment.assignment_id})"
        )
        await invalidate_pending_queue(self.redis_service)
        return assignment, True

    async def count_active_in_round(self, round_id: int, volunteer_id: int) -> int:
        """Active assignments a volunteer holds on orders bound to a round."""
        result = await self.db.execute(
            select(func.count(OrderAssignment.assignment_id))
            .join(Order, Order.order_id == OrderAssignment.order_id)
            .where(Order.round_id == round_id)
            .where(OrderAssignment.volunteer_id == volunteer_id)
            .where(OrderAssignment.status.in_(AssignmentStatus.ACTIVE))
        )
        return result.scalar_one()

    async def _check_volunteer_capacity(self, round_id: int, volunteer_id: int) -> None:
        # Soft cap: two accepts racing past it can leave the volunteer one over
        if self.max_orders_per_volunteer <= 0:
            return
        held = await self.count_active_in_round(round_id, volunteer_id)
        if held >= self.max_orders_per_volunteer:
            raise VolunteerAtCapacity(
                f"Volunteer {volunteer_id} already holds {held} orders in round {round_id}"
            )

    async def _resolve_lost_race(
        self, order_id: int, volunteer_id: int
    ) -> tuple[OrderAssignment, bool]:
        """Classify a failed compare-and-set against the state that beat it."""
        existing = await self.get_active_assignment(order_id)
        if existing is not None and existing.volunteer_id == volunteer_id:
            return existing, False

        order = await self._load_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        logger.info(f"Volunteer {volunteer_id} lost accept race for order {order_id}")
        if existing is None and order.is_terminal:
            raise OrderNotPending(f"Order {order_id} is {order.status}")
        raise OrderAlreadyAccepted()

    # ==================== Assignment lifecycle ====================

    async def _owned_assignment(self, assignment_id: int, volunteer_id: int) -> OrderAssignment:
        assignment = await self.get_assignment(assignment_id)
        if assignment.volunteer_id != volunteer_id:
            raise NotOwner(f"Assignment {assignment_id} belongs to another volunteer")
        return assignment

    async def start(self, assignment_id: int, volunteer_id: int) -> OrderAssignment:
        """ACCEPTED -> IN_PROGRESS by the owning volunteer."""
        assignment = await self._owned_assignment(assignment_id, volunteer_id)
        if assignment.status != AssignmentStatus.ACCEPTED:
            raise InvalidTransition(
                f"Assignment {assignment_id} is {assignment.status}; only ACCEPTED can start"
            )

        try:
            await self._assignment_cas(
                assignment_id,
                (AssignmentStatus.ACCEPTED,),
                AssignmentStatus.IN_PROGRESS,
                started_at=utcnow(),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Assignment {assignment_id} started by volunteer {volunteer_id}")
        return await self.get_assignment(assignment_id)

    async def complete(self, assignment_id: int, volunteer_id: int) -> OrderAssignment:
        """IN_PROGRESS -> COMPLETED; the order moves PROCESSING -> COMPLETED."""
        assignment = await self._owned_assignment(assignment_id, volunteer_id)
        if assignment.status != AssignmentStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Assignment {assignment_id} is {assignment.status}; only IN_PROGRESS can complete"
            )
        order_id = assignment.order_id

        try:
            now = utcnow()
            await self._assignment_cas(
                assignment_id,
                (AssignmentStatus.IN_PROGRESS,),
                AssignmentStatus.COMPLETED,
                completed_at=now,
            )
            result = await self.db.execute(
                update(Order)
                .where(Order.order_id == order_id)
                .where(Order.status == OrderStatus.PROCESSING)
                .values(
                    status=OrderStatus.COMPLETED,
                    delivery_time=now,
                    version=Order.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyError(f"Order {order_id} is no longer PROCESSING")
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Assignment {assignment_id} completed, order {order_id} delivered")
        return await self.get_assignment(assignment_id)

    async def cancel_assignment(self, order_id: int, volunteer_id: int) -> OrderAssignment:
        """Give an order back to the pool.

        Raises:
            OrderNotFound: Order does not exist
            NoActiveAssignment: Nobody holds the order
            NotOwner: Another volunteer holds the order
        """
        order = await self._load_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")

        active = await self.get_active_assignment(order_id)
        if active is None:
            raise NoActiveAssignment(f"Order {order_id} has no active assignment")
        if active.volunteer_id != volunteer_id:
            raise NotOwner(f"Order {order_id} is assigned to another volunteer")
        assignment_id = active.assignment_id

        try:
            await self._release(assignment_id, order_id, AssignmentStatus.ACTIVE)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Assignment {assignment_id} cancelled by volunteer {volunteer_id}, "
            f"order {order_id} back to PENDING"
        )
        await invalidate_pending_queue(self.redis_service)
        return await self.get_assignment(assignment_id)

    async def release_stale_assignments(self, older_than: timedelta) -> int:
        """Return ACCEPTED-but-never-started orders to the pool.

        Each release is its own transaction and uses the same guards as
        cancel_assignment, so it is safe alongside volunteers acting on the
        same assignments.

        Returns:
            Number of assignments released
        """
        cutoff = utcnow() - older_than
        result = await self.db.execute(
            select(OrderAssignment.assignment_id, OrderAssignment.order_id)
            .where(OrderAssignment.status == AssignmentStatus.ACCEPTED)
            .where(OrderAssignment.accepted_at < cutoff)
            .order_by(OrderAssignment.accepted_at.asc())
        )
        candidates = list(result.all())

        released = 0
        for assignment_id, order_id in candidates:
            try:
                await self._release(assignment_id, order_id, (AssignmentStatus.ACCEPTED,))
                await self.db.commit()
                released += 1
            except ConcurrencyError:
                await self.db.rollback()
                logger.info(f"Assignment {assignment_id} changed before reclaim, skipped")
            except Exception:
                await self.db.rollback()
                raise

        if released:
            logger.info(f"Released {released} stale assignments accepted before {cutoff}")
            await invalidate_pending_queue(self.redis_service)
        return released

    # ==================== Guarded writes ====================

    async def _assignment_cas(
        self, assignment_id: int, expected: tuple[str, ...], new_status: str, **values
    ) -> None:
        result = await self.db.execute(
            update(OrderAssignment)
            .where(OrderAssignment.assignment_id == assignment_id)
            .where(OrderAssignment.status.in_(expected))
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyError(f"Assignment {assignment_id} changed, refresh and retry")

    async def _release(
        self, assignment_id: int, order_id: int, expected: tuple[str, ...]
    ) -> None:
        """Assignment -> CANCELLED and order PROCESSING -> PENDING, in the caller's transaction."""
        now = utcnow()
        await self._assignment_cas(
            assignment_id, expected, AssignmentStatus.CANCELLED, cancelled_at=now
        )
        result = await self.db.execute(
            update(Order)
            .where(Order.order_id == order_id)
            .where(Order.status == OrderStatus.PROCESSING)
            .values(
                status=OrderStatus.PENDING,
                version=Order.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyError(f"Order {order_id} is no longer PROCESSING")
