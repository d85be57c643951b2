"""Admission controller: binds orders to rounds without exceeding capacity.

Capacity checks run under the round guard:
- Row lock: SELECT ... FOR UPDATE on the round
- Optimistic lock: UPDATE rounds SET version = version + 1 WHERE version = ?

The usage count is taken after the guard, inside the same transaction, so two
binds racing for the last slot can never both see a free seat. A lost version
check is retried a bounded number of times.
"""

import logging

from cachetools import TTLCache
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.core.config import settings
from streetmed.models.base import utcnow
from streetmed.models.order import Order, OrderStatus
from streetmed.models.round import Round, RoundSignup, RoundStatus, SignupRole, SignupStatus
from streetmed.schemas.round import RoundCapacityStatus
from streetmed.services.errors import (
    ConcurrencyError,
    CoordinationError,
    OrderNotBindable,
    OrderNotFound,
    RoundFull,
    RoundNotFound,
    RoundNotSchedulable,
)
from streetmed.services.pending_queue_service import invalidate_pending_queue
from streetmed.services.redis_service import RedisService

logger = logging.getLogger(__name__)

# Round capacity figures, keyed by round_id
_round_status_cache: TTLCache = TTLCache(maxsize=1000, ttl=settings.ROUND_STATUS_CACHE_TTL)


def invalidate_round_status(round_id: int) -> None:
    _round_status_cache.pop(round_id, None)


async def lock_round(db: AsyncSession, round_id: int) -> Round:
    """Acquire the round guard inside the caller's transaction.

    Raises:
        RoundNotFound: Round does not exist
        ConcurrencyError: Another writer bumped the version first
    """
    result = await db.execute(
        select(Round)
        .where(Round.round_id == round_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    round_ = result.scalar_one_or_none()
    if round_ is None:
        raise RoundNotFound(f"Round {round_id} not found")

    result = await db.execute(
        update(Round)
        .where(Round.round_id == round_id)
        .where(Round.version == round_.version)
        .values(version=Round.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyError(f"Concurrent update conflict for round {round_id}")

    return round_


async def count_bound_orders(db: AsyncSession, round_id: int) -> int:
    """Orders counted against a round's order capacity."""
    result = await db.execute(
        select(func.count(Order.order_id))
        .where(Order.round_id == round_id)
        .where(Order.status != OrderStatus.CANCELLED)
    )
    return result.scalar_one()


async def count_signups(
    db: AsyncSession, round_id: int, status: str, role: str | None = None
) -> int:
    stmt = (
        select(func.count(RoundSignup.signup_id))
        .where(RoundSignup.round_id == round_id)
        .where(RoundSignup.status == status)
    )
    if role is not None:
        stmt = stmt.where(RoundSignup.requested_role == role)
    result = await db.execute(stmt)
    return result.scalar_one()


async def count_participants(db: AsyncSession, round_id: int) -> int:
    """Confirmed volunteers counted against max_participants."""
    return await count_signups(db, round_id, SignupStatus.CONFIRMED, SignupRole.VOLUNTEER)


class AdmissionService:
    """Service class for round capacity admission."""

    def __init__(
        self,
        db: AsyncSession,
        redis_service: RedisService | None = None,
        retry_attempts: int | None = None,
    ):
        self.db = db
        self.redis_service = redis_service
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.BIND_RETRY_ATTEMPTS
        )

    async def _load_order(self, order_id: int) -> Order | None:
        result = await self.db.execute(
            select(Order)
            .where(Order.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def bind_order_to_round(
        self,
        order_id: int,
        round_id: int | None,
        only_if_unbound: bool = False,
    ) -> Order:
        """Bind an order to a round, or unbind it when round_id is None.

        Args:
            order_id: Order ID
            round_id: Target round, None to unbind
            only_if_unbound: Refuse orders that already have a round

        Returns:
            Order after the write

        Raises:
            OrderNotFound: Order does not exist
            OrderNotBindable: Order is terminal, or already bound with only_if_unbound
            RoundNotFound: Round does not exist
            RoundNotSchedulable: Round is not SCHEDULED
            RoundFull: Round order capacity reached
            ConcurrencyError: Version conflicts outlasted the retries
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                changed = await self._bind_once(order_id, round_id, only_if_unbound)
                await self.db.commit()
                break
            except ConcurrencyError:
                await self.db.rollback()
                if attempt >= self.retry_attempts:
                    logger.warning(
                        f"Binding order {order_id} to round {round_id} gave up "
                        f"after {attempt} attempts"
                    )
                    raise
                logger.info(
                    f"Round {round_id} version conflict binding order {order_id}, "
                    f"retry {attempt}/{self.retry_attempts}"
                )
            except Exception:
                await self.db.rollback()
                raise

        if changed:
            if round_id is None:
                logger.info(f"Order {order_id} unbound from its round")
            else:
                logger.info(f"Order {order_id} bound to round {round_id}")
                invalidate_round_status(round_id)
            await invalidate_pending_queue(self.redis_service)

        return await self._load_order(order_id)

    async def _bind_once(
        self, order_id: int, round_id: int | None, only_if_unbound: bool
    ) -> bool:
        order = await self._load_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.is_terminal:
            raise OrderNotBindable(f"Order {order_id} is {order.status}")

        previous_round = order.round_id
        if round_id is None:
            if previous_round is None:
                return False
            await self._write_round(order_id, None, expected_round=previous_round)
            invalidate_round_status(previous_round)
            return True

        if only_if_unbound and previous_round is not None:
            raise OrderNotBindable(f"Order {order_id} is already bound to round {previous_round}")
        if previous_round == round_id:
            return False

        round_ = await lock_round(self.db, round_id)
        if round_.status != RoundStatus.SCHEDULED:
            raise RoundNotSchedulable(f"Round {round_id} is {round_.status}")

        current = await count_bound_orders(self.db, round_id)
        if current >= round_.order_capacity:
            raise RoundFull(
                f"Round {round_id} is full ({current}/{round_.order_capacity} orders)"
            )

        await self._write_round(order_id, round_id, expected_round=previous_round)
        if previous_round is not None:
            invalidate_round_status(previous_round)
        return True

    async def _write_round(
        self, order_id: int, round_id: int | None, expected_round: int | None
    ) -> None:
        stmt = (
            update(Order)
            .where(Order.order_id == order_id)
            .where(Order.status.not_in(OrderStatus.TERMINAL))
        )
        if expected_round is None:
            stmt = stmt.where(Order.round_id.is_(None))
        else:
            stmt = stmt.where(Order.round_id == expected_round)

        result = await self.db.execute(
            stmt.values(round_id=round_id, updated_at=utcnow()).execution_options(
                synchronize_session=False
            )
        )
        if result.rowcount != 1:
            raise ConcurrencyError(f"Order {order_id} changed while binding")

    async def auto_assign_unbound_orders(self) -> tuple[int, int]:
        """Place unbound orders into upcoming rounds, oldest order first.

        Rounds are filled greedily in start order; a full round is skipped for
        the rest of the pass.

        Returns:
            Tuple of (bound, skipped)
        """
        now = utcnow()
        rounds_result = await self.db.execute(
            select(Round.round_id)
            .where(Round.status == RoundStatus.SCHEDULED)
            .where(Round.start_time > now)
            .order_by(Round.start_time.asc(), Round.round_id.asc())
        )
        round_ids = list(rounds_result.scalars().all())

        orders_result = await self.db.execute(
            select(Order.order_id)
            .where(Order.round_id.is_(None))
            .where(Order.status.not_in(OrderStatus.TERMINAL))
            .order_by(Order.request_time.asc(), Order.order_id.asc())
        )
        order_ids = list(orders_result.scalars().all())

        bound = 0
        skipped = 0
        round_index = 0
        for order_id in order_ids:
            placed = False
            while round_index < len(round_ids):
                try:
                    await self.bind_order_to_round(
                        order_id, round_ids[round_index], only_if_unbound=True
                    )
                    placed = True
                    break
                except (RoundFull, RoundNotSchedulable, RoundNotFound):
                    round_index += 1
                except CoordinationError as e:
                    logger.info(f"Auto-assign skipped order {order_id}: {e.message}")
                    break
            if placed:
                bound += 1
            else:
                skipped += 1

        logger.info(
            f"Auto-assign finished: {bound} bound, {skipped} skipped, "
            f"{len(round_ids)} upcoming rounds"
        )
        return bound, skipped

    async def get_round_status(self, round_id: int, use_cache: bool = True) -> RoundCapacityStatus:
        """Capacity figures of a round.

        Served from a short-lived local cache when use_cache is set; every
        guarded write through this service drops the cached entry.
        """
        if use_cache:
            cached = _round_status_cache.get(round_id)
            if cached is not None:
                return cached

        result = await self.db.execute(
            select(Round)
            .where(Round.round_id == round_id)
            .execution_options(populate_existing=True)
        )
        round_ = result.scalar_one_or_none()
        if round_ is None:
            raise RoundNotFound(f"Round {round_id} not found")

        order_count = await count_bound_orders(self.db, round_id)
        confirmed = await count_participants(self.db, round_id)
        waitlisted = await count_signups(self.db, round_id, SignupStatus.WAITLISTED)
        team_leads = await count_signups(
            self.db, round_id, SignupStatus.CONFIRMED, SignupRole.TEAM_LEAD
        )
        clinicians = await count_signups(
            self.db, round_id, SignupStatus.CONFIRMED, SignupRole.CLINICIAN
        )

        status = RoundCapacityStatus(
            round_id=round_id,
            status=round_.status,
            order_capacity=round_.order_capacity,
            current_order_count=order_count,
            available_order_slots=max(0, round_.order_capacity - order_count),
            max_participants=round_.max_participants,
            current_participants=confirmed,
            available_participant_slots=max(0, round_.max_participants - confirmed),
            waitlisted=waitlisted,
            has_team_lead=team_leads > 0,
            has_clinician=clinicians > 0,
            is_consistent=(
                order_count <= round_.order_capacity
                and confirmed <= round_.max_participants
            ),
        )
        if use_cache:
            _round_status_cache[round_id] = status
        return status
