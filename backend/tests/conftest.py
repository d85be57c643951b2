"""Pytest configuration and fixtures for testing."""

from datetime import datetime, timedelta
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from streetmed.core.database import Base
from streetmed.models import (
    Order,
    OrderItem,
    OrderStatus,
    Round,
    RoundSignup,
    RoundStatus,
    SignupRole,
    SignupStatus,
)
from streetmed.models.base import utcnow
from streetmed.services import admission_service


# Mock Redis client fixture
@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create a mock Redis client."""
    redis = AsyncMock()

    # Mock common Redis operations
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.setex = AsyncMock(return_value=True)
    redis.incr = AsyncMock(return_value=1)
    redis.delete = AsyncMock(return_value=1)

    # Sliding window script: allowed, retry_after=0
    redis.register_script = MagicMock(return_value=AsyncMock(return_value=[1, 0]))

    return redis


# Database fixtures: one SQLite file per test so concurrent sessions really
# contend on the same rows
@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create an async engine over a fresh SQLite database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'streetmed.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for a single test."""
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def clear_round_status_cache():
    """Round IDs restart in every test database."""
    admission_service._round_status_cache.clear()
    yield
    admission_service._round_status_cache.clear()


# Row factories; each commits through its own session and returns the new ID
@pytest.fixture
def make_order(session_maker):
    async def create(
        user_id: int | None = 1,
        status: str = OrderStatus.PENDING,
        request_time: datetime | None = None,
        round_id: int | None = None,
        client_ip: str | None = None,
    ) -> int:
        async with session_maker() as session:
            order = Order(
                user_id=user_id,
                client_ip=client_ip,
                round_id=round_id,
                status=status,
                delivery_address="Corner of 5th and Liberty",
                phone_number="412-555-0100",
                notes="Near the bus shelter",
                request_time=request_time or utcnow(),
                items=[
                    OrderItem(item_name="Socks", quantity=2, size="L"),
                    OrderItem(item_name="Hygiene kit", quantity=1),
                ],
            )
            session.add(order)
            await session.commit()
            return order.order_id

    return create


@pytest.fixture
def make_round(session_maker):
    async def create(
        starts_in: timedelta = timedelta(days=3),
        max_participants: int = 5,
        order_capacity: int = 20,
        status: str = RoundStatus.SCHEDULED,
    ) -> int:
        start_time = utcnow() + starts_in
        async with session_maker() as session:
            round_ = Round(
                title="Downtown outreach",
                start_time=start_time,
                end_time=start_time + timedelta(hours=3),
                location="Market Square",
                max_participants=max_participants,
                order_capacity=order_capacity,
                status=status,
            )
            session.add(round_)
            await session.commit()
            return round_.round_id

    return create


@pytest.fixture
def make_signup(session_maker):
    async def create(
        round_id: int,
        volunteer_id: int,
        status: str = SignupStatus.WAITLISTED,
        requested_role: str = SignupRole.VOLUNTEER,
    ) -> int:
        async with session_maker() as session:
            signup = RoundSignup(
                round_id=round_id,
                volunteer_id=volunteer_id,
                requested_role=requested_role,
                status=status,
                signup_time=utcnow(),
            )
            session.add(signup)
            await session.commit()
            return signup.signup_id

    return create
