"""Tests for round capacity admission.

The capacity invariant must hold even when binds race for the last slot:
bound non-cancelled orders never exceed order_capacity.
"""

import asyncio
from datetime import timedelta

import pytest

from streetmed.models import OrderStatus, RoundStatus, SignupStatus
from streetmed.models.base import utcnow
from streetmed.services.admission_service import AdmissionService, count_bound_orders
from streetmed.services.errors import (
    ConcurrencyError,
    OrderNotBindable,
    RoundFull,
    RoundNotFound,
    RoundNotSchedulable,
)


class TestBind:
    """Test single-caller binding."""

    @pytest.mark.asyncio
    async def test_bind_and_unbind(self, db, make_order, make_round):
        round_id = await make_round(order_capacity=2)
        order_id = await make_order()
        service = AdmissionService(db)

        order = await service.bind_order_to_round(order_id, round_id)
        assert order.round_id == round_id

        order = await service.bind_order_to_round(order_id, None)
        assert order.round_id is None
        assert await count_bound_orders(db, round_id) == 0

    @pytest.mark.asyncio
    async def test_full_round(self, db, make_order, make_round):
        round_id = await make_round(order_capacity=1)
        first = await make_order()
        second = await make_order()
        service = AdmissionService(db)
        await service.bind_order_to_round(first, round_id)

        with pytest.raises(RoundFull):
            await service.bind_order_to_round(second, round_id)

        assert await count_bound_orders(db, round_id) == 1

    @pytest.mark.asyncio
    async def test_cancelled_orders_free_capacity(self, db, make_order, make_round):
        round_id = await make_round(order_capacity=1)
        await make_order(round_id=round_id, status=OrderStatus.CANCELLED)
        order_id = await make_order()

        order = await AdmissionService(db).bind_order_to_round(order_id, round_id)

        assert order.round_id == round_id

    @pytest.mark.asyncio
    async def test_rebinding_same_round_is_noop(self, db, make_order, make_round):
        round_id = await make_round(order_capacity=1)
        order_id = await make_order()
        service = AdmissionService(db)
        await service.bind_order_to_round(order_id, round_id)

        order = await service.bind_order_to_round(order_id, round_id)

        assert order.round_id == round_id

    @pytest.mark.asyncio
    async def test_terminal_order_not_bindable(self, db, make_order, make_round):
        round_id = await make_round()
        order_id = await make_order(status=OrderStatus.COMPLETED)

        with pytest.raises(OrderNotBindable):
            await AdmissionService(db).bind_order_to_round(order_id, round_id)

    @pytest.mark.asyncio
    async def test_round_must_be_scheduled(self, db, make_order, make_round):
        round_id = await make_round(status=RoundStatus.IN_PROGRESS)
        order_id = await make_order()

        with pytest.raises(RoundNotSchedulable):
            await AdmissionService(db).bind_order_to_round(order_id, round_id)

    @pytest.mark.asyncio
    async def test_missing_round(self, db, make_order):
        order_id = await make_order()

        with pytest.raises(RoundNotFound):
            await AdmissionService(db).bind_order_to_round(order_id, 999)

    @pytest.mark.asyncio
    async def test_only_if_unbound(self, db, make_order, make_round):
        first_round = await make_round()
        second_round = await make_round()
        order_id = await make_order(round_id=first_round)

        with pytest.raises(OrderNotBindable):
            await AdmissionService(db).bind_order_to_round(
                order_id, second_round, only_if_unbound=True
            )


class TestConcurrentBind:
    """Binds racing for the same round."""

    @pytest.mark.asyncio
    async def test_last_slot_goes_to_exactly_one(self, session_maker, make_order, make_round):
        round_id = await make_round(order_capacity=1)
        first = await make_order()
        second = await make_order()

        async def attempt(order_id):
            async with session_maker() as session:
                try:
                    await AdmissionService(session).bind_order_to_round(order_id, round_id)
                    return "bound"
                except RoundFull:
                    return "full"

        results = await asyncio.gather(attempt(first), attempt(second))

        assert sorted(results) == ["bound", "full"]
        async with session_maker() as session:
            assert await count_bound_orders(session, round_id) == 1

    @pytest.mark.asyncio
    async def test_capacity_never_exceeded(self, session_maker, make_order, make_round):
        round_id = await make_round(order_capacity=2)
        order_ids = [await make_order() for _ in range(6)]

        async def attempt(order_id):
            async with session_maker() as session:
                service = AdmissionService(session, retry_attempts=20)
                try:
                    await service.bind_order_to_round(order_id, round_id)
                    return "bound"
                except (RoundFull, ConcurrencyError):
                    return "refused"

        results = await asyncio.gather(*(attempt(o) for o in order_ids))

        assert results.count("bound") == 2
        async with session_maker() as session:
            assert await count_bound_orders(session, round_id) == 2


class TestAutoAssign:
    """Test greedy placement of unbound orders."""

    @pytest.mark.asyncio
    async def test_fills_rounds_in_start_order(self, db, make_order, make_round):
        later = await make_round(starts_in=timedelta(days=2), order_capacity=1)
        sooner = await make_round(starts_in=timedelta(days=1), order_capacity=2)
        await make_round(starts_in=timedelta(days=-1), order_capacity=10)
        await make_round(starts_in=timedelta(days=1), status=RoundStatus.CANCELLED)

        now = utcnow()
        oldest = await make_order(request_time=now - timedelta(hours=5))
        middle = await make_order(request_time=now - timedelta(hours=3))
        newer = await make_order(request_time=now - timedelta(hours=2))
        newest = await make_order(request_time=now - timedelta(hours=1))
        await make_order(status=OrderStatus.CANCELLED)

        service = AdmissionService(db)
        bound, skipped = await service.auto_assign_unbound_orders()

        assert (bound, skipped) == (3, 1)
        assert (await service._load_order(oldest)).round_id == sooner
        assert (await service._load_order(middle)).round_id == sooner
        assert (await service._load_order(newer)).round_id == later
        assert (await service._load_order(newest)).round_id is None

    @pytest.mark.asyncio
    async def test_no_rounds(self, db, make_order):
        await make_order()

        bound, skipped = await AdmissionService(db).auto_assign_unbound_orders()

        assert (bound, skipped) == (0, 1)


class TestRoundStatus:
    """Test capacity figures."""

    @pytest.mark.asyncio
    async def test_status_figures(self, db, make_order, make_round, make_signup):
        round_id = await make_round(max_participants=3, order_capacity=4)
        await make_order(round_id=round_id)
        await make_order(round_id=round_id, status=OrderStatus.PROCESSING)
        await make_order(round_id=round_id, status=OrderStatus.CANCELLED)
        await make_signup(round_id, 1, status=SignupStatus.CONFIRMED)
        await make_signup(round_id, 2, status=SignupStatus.WAITLISTED)
        await make_signup(round_id, 3, status=SignupStatus.REJECTED)

        status = await AdmissionService(db).get_round_status(round_id)

        assert status.current_order_count == 2
        assert status.available_order_slots == 2
        assert status.current_participants == 1
        assert status.available_participant_slots == 2
        assert status.waitlisted == 1
        assert status.is_consistent is True

    @pytest.mark.asyncio
    async def test_bind_drops_cached_status(self, db, make_order, make_round):
        round_id = await make_round(order_capacity=2)
        order_id = await make_order()
        service = AdmissionService(db)
        before = await service.get_round_status(round_id)

        await service.bind_order_to_round(order_id, round_id)
        after = await service.get_round_status(round_id)

        assert before.current_order_count == 0
        assert after.current_order_count == 1
