"""Seed data script for development and load testing.

Creates:
- ROUND_COUNT upcoming scheduled rounds, one per day starting tomorrow
- PENDING_ORDERS pending orders spread over CLIENT_COUNT clients
- WAITLIST_SIZE waitlisted volunteer sign-ups on the first round

Environment Variables:
    ROUND_COUNT: Number of rounds to create (default: 3)
    PENDING_ORDERS: Number of pending orders (default: 200)
    CLIENT_COUNT: Number of distinct client ids placing orders (default: 50)
    WAITLIST_SIZE: Volunteers waitlisted on the first round (default: 30)
    RESET_DATA: Set to "true" to clear all coordination data before seeding (default: false)

Usage:
    # First time setup
    cd backend && python -m scripts.seed_data

    # Reset and reseed for an accept-race load test
    RESET_DATA=true PENDING_ORDERS=1000 python -m scripts.seed_data
"""

import asyncio
import os
import random
from datetime import timedelta

# Configuration from environment variables
ROUND_COUNT = int(os.getenv("ROUND_COUNT", "3"))
PENDING_ORDERS = int(os.getenv("PENDING_ORDERS", "200"))
CLIENT_COUNT = int(os.getenv("CLIENT_COUNT", "50"))
WAITLIST_SIZE = int(os.getenv("WAITLIST_SIZE", "30"))
RESET_DATA = os.getenv("RESET_DATA", "false").lower() == "true"

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.core.config import settings
from streetmed.core.database import async_session_maker, engine
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

ITEM_CATALOG = [
    ("Socks", "L"),
    ("Rain poncho", None),
    ("Hygiene kit", None),
    ("Hand warmers", None),
    ("Winter hat", None),
    ("Water bottle", None),
    ("Gloves", "M"),
]

LOCATIONS = ["Downtown", "South Side Works", "East Liberty", "Allegheny Commons"]


async def reset_coordination_data(session: AsyncSession) -> None:
    """Clear assignments, orders, sign-ups and rounds."""
    print("Resetting coordination data...")
    for table in ("order_assignments", "order_items", "orders", "round_signups", "rounds"):
        await session.execute(text(f"DELETE FROM {table}"))
    await session.commit()
    print("  Cleared order_assignments, order_items, orders, round_signups, rounds")


async def seed_rounds(session: AsyncSession) -> list[Round]:
    """Create upcoming scheduled rounds, one per day at 18:00 UTC."""
    print("Seeding rounds...")

    if not RESET_DATA:
        result = await session.execute(
            select(Round).where(Round.status == RoundStatus.SCHEDULED).limit(1)
        )
        if result.scalar_one_or_none():
            print("  Scheduled rounds already exist, skipping...")
            result = await session.execute(
                select(Round)
                .where(Round.status == RoundStatus.SCHEDULED)
                .order_by(Round.start_time)
            )
            return list(result.scalars().all())

    tomorrow = utcnow().replace(hour=18, minute=0, second=0, microsecond=0) + timedelta(days=1)
    rounds = []
    for i in range(ROUND_COUNT):
        start = tomorrow + timedelta(days=i)
        rounds.append(
            Round(
                title=f"Evening outreach #{i + 1}",
                description="Supply run and wound care",
                start_time=start,
                end_time=start + timedelta(hours=3),
                location=LOCATIONS[i % len(LOCATIONS)],
                max_participants=8,
                order_capacity=settings.DEFAULT_ORDER_CAPACITY,
                status=RoundStatus.SCHEDULED,
            )
        )

    session.add_all(rounds)
    await session.commit()
    for round_ in rounds:
        await session.refresh(round_)

    print(f"  Created {len(rounds)} rounds")
    return rounds


async def seed_orders(session: AsyncSession) -> int:
    """Create pending, unbound orders with one to three items each."""
    print("Seeding orders...")

    now = utcnow()
    orders = []
    for i in range(PENDING_ORDERS):
        picks = random.sample(ITEM_CATALOG, k=random.randint(1, 3))
        orders.append(
            Order(
                user_id=random.randint(1000, 1000 + CLIENT_COUNT - 1),
                status=OrderStatus.PENDING,
                delivery_address=f"{random.randint(1, 999)} Liberty Ave",
                request_time=now - timedelta(minutes=PENDING_ORDERS - i),
                items=[
                    OrderItem(item_name=name, quantity=random.randint(1, 3), size=size)
                    for name, size in picks
                ],
            )
        )

    session.add_all(orders)
    await session.commit()

    print(f"  Created {len(orders)} pending orders")
    return len(orders)


async def seed_signups(session: AsyncSession, round_: Round) -> int:
    """Waitlist volunteers on a round so a lottery can be drawn."""
    print(f"Seeding sign-ups for round {round_.round_id}...")

    result = await session.execute(
        select(RoundSignup).where(RoundSignup.round_id == round_.round_id).limit(1)
    )
    if result.scalar_one_or_none():
        print("  Sign-ups already exist, skipping...")
        return 0

    signups = [
        RoundSignup(
            round_id=round_.round_id,
            volunteer_id=volunteer_id,
            requested_role=SignupRole.VOLUNTEER,
            status=SignupStatus.WAITLISTED,
        )
        for volunteer_id in range(1, WAITLIST_SIZE + 1)
    ]

    session.add_all(signups)
    await session.commit()

    print(f"  Waitlisted {len(signups)} volunteers")
    return len(signups)


async def main():
    """Main seed function."""
    print("=" * 60)
    print("Street Medicine Coordination - Seed Data Script")
    print("=" * 60)
    print(f"  RESET_DATA: {RESET_DATA}")
    print(f"  ROUND_COUNT: {ROUND_COUNT}")
    print(f"  PENDING_ORDERS: {PENDING_ORDERS}")
    print(f"  WAITLIST_SIZE: {WAITLIST_SIZE}")
    print("=" * 60)

    async with async_session_maker() as session:
        if RESET_DATA:
            await reset_coordination_data(session)

        rounds = await seed_rounds(session)
        order_count = await seed_orders(session)
        signup_count = await seed_signups(session, rounds[0]) if rounds else 0

    print("=" * 60)
    print("Seed data complete!")
    print(f"  Rounds: {len(rounds)}")
    print(f"  Pending orders: {order_count}")
    print(f"  Waitlisted sign-ups: {signup_count}")
    if rounds:
        print(f"  First round: {rounds[0].round_id} at {rounds[0].start_time}")
    print("=" * 60)
    print("")
    print("To bind the pending orders to rounds, call:")
    print("  POST /api/v1/rounds/auto-assign  (X-User-Role: ADMIN)")
    print("=" * 60)

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
