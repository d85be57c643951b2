"""Lottery engine and signup desk for round participation.

Volunteers sign up to a round and wait on the waitlist; the lottery fills the
remaining participant seats by drawing uniformly without replacement. Team
leads and clinicians skip the waitlist: each round has one seat per role,
confirmed on sign-up and not counted against max_participants. Every write
that can raise a confirmed count runs under the round guard from
admission_service.
"""

import logging
import random
from datetime import timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from streetmed.core.config import settings
from streetmed.models.base import utcnow
from streetmed.models.round import Round, RoundSignup, RoundStatus, SignupRole, SignupStatus
from streetmed.services.admission_service import (
    count_participants,
    count_signups,
    invalidate_round_status,
    lock_round,
)
from streetmed.services.errors import (
    AlreadySignedUp,
    ConcurrencyError,
    InvalidTransition,
    NotOwner,
    RoleSeatTaken,
    RoundFull,
    RoundNotFound,
    RoundNotSchedulable,
    SignupClosed,
    SignupNotFound,
    ValidationFailed,
)

logger = logging.getLogger(__name__)


class LotteryService:
    """Service class for round sign-ups and the participant lottery."""

    def __init__(
        self,
        db: AsyncSession,
        rng: random.Random | None = None,
        retry_attempts: int | None = None,
    ):
        """Initialize lottery service.

        Args:
            db: SQLAlchemy async session
            rng: Random source for draws; seeded from LOTTERY_SEED when omitted
            retry_attempts: Round guard retries, BIND_RETRY_ATTEMPTS when omitted
        """
        self.db = db
        self.rng = rng if rng is not None else random.Random(settings.LOTTERY_SEED)
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None else settings.BIND_RETRY_ATTEMPTS
        )

    # ==================== Reads ====================

    async def _get_round(self, round_id: int) -> Round:
        result = await self.db.execute(
            select(Round)
            .where(Round.round_id == round_id)
            .execution_options(populate_existing=True)
        )
        round_ = result.scalar_one_or_none()
        if round_ is None:
            raise RoundNotFound(f"Round {round_id} not found")
        return round_

    async def get_signup(self, signup_id: int) -> RoundSignup:
        result = await self.db.execute(
            select(RoundSignup)
            .where(RoundSignup.signup_id == signup_id)
            .execution_options(populate_existing=True)
        )
        signup = result.scalar_one_or_none()
        if signup is None:
            raise SignupNotFound(f"Signup {signup_id} not found")
        return signup

    async def list_round_signups(
        self, round_id: int, status: str | None = None
    ) -> tuple[list[RoundSignup], int]:
        """Sign-ups of a round in arrival order.

        Returns:
            Tuple of (signups list, total count)
        """
        await self._get_round(round_id)

        stmt = select(RoundSignup).where(RoundSignup.round_id == round_id)
        if status is not None:
            stmt = stmt.where(RoundSignup.status == status)
        result = await self.db.execute(
            stmt.order_by(RoundSignup.signup_time.asc(), RoundSignup.signup_id.asc())
        )
        signups = list(result.scalars().all())
        return signups, len(signups)

    async def list_volunteer_signups(self, volunteer_id: int) -> tuple[list[RoundSignup], int]:
        result = await self.db.execute(
            select(RoundSignup)
            .where(RoundSignup.volunteer_id == volunteer_id)
            .order_by(RoundSignup.signup_time.desc(), RoundSignup.signup_id.desc())
        )
        signups = list(result.scalars().all())
        return signups, len(signups)

    # ==================== Signup desk ====================

    async def signup(
        self, round_id: int, volunteer_id: int, requested_role: str | None = None
    ) -> RoundSignup:
        """Sign a volunteer up for an upcoming round.

        Plain volunteers join the waitlist. A team lead or clinician takes the
        round's single seat for that role and is confirmed on the spot.

        Raises:
            ValidationFailed: Unknown role
            RoundNotFound: Round does not exist
            RoundNotSchedulable: Round is not SCHEDULED
            SignupClosed: Round has already started
            AlreadySignedUp: Volunteer holds an active sign-up for the round
            RoleSeatTaken: The team lead or clinician seat is already filled
        """
        role = requested_role or SignupRole.VOLUNTEER
        if role not in SignupRole.ALL:
            raise ValidationFailed(f"Unknown role {role}")
        if role in SignupRole.SEATED:
            return await self._take_role_seat(round_id, volunteer_id, role)

        round_ = await self._get_round(round_id)
        self._check_open(round_)
        await self._check_not_signed_up(round_id, volunteer_id)

        signup = RoundSignup(
            round_id=round_id,
            volunteer_id=volunteer_id,
            requested_role=role,
            status=SignupStatus.WAITLISTED,
            signup_time=utcnow(),
        )
        self.db.add(signup)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise AlreadySignedUp()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Volunteer {volunteer_id} waitlisted for round {round_id} "
            f"as {role} (signup {signup.signup_id})"
        )
        invalidate_round_status(round_id)
        return signup

    async def _take_role_seat(self, round_id: int, volunteer_id: int, role: str) -> RoundSignup:
        async def take(round_: Round) -> RoundSignup:
            self._check_open(round_)
            await self._check_not_signed_up(round_id, volunteer_id)
            if await count_signups(self.db, round_id, SignupStatus.CONFIRMED, role) > 0:
                raise RoleSeatTaken(f"Round {round_id} already has a {role.lower()} assigned")

            signup = RoundSignup(
                round_id=round_id,
                volunteer_id=volunteer_id,
                requested_role=role,
                status=SignupStatus.CONFIRMED,
                signup_time=utcnow(),
            )
            self.db.add(signup)
            await self.db.flush()
            return signup

        try:
            signup = await self._with_round_guard(round_id, take)
        except IntegrityError:
            # Lost to a writer that skipped the round guard; report which rule
            await self._check_not_signed_up(round_id, volunteer_id)
            raise RoleSeatTaken(f"Round {round_id} already has a {role.lower()} assigned")

        logger.info(
            f"Volunteer {volunteer_id} confirmed for round {round_id} "
            f"as {role} (signup {signup.signup_id})"
        )
        invalidate_round_status(round_id)
        return await self.get_signup(signup.signup_id)

    @staticmethod
    def _check_open(round_: Round) -> None:
        if round_.status != RoundStatus.SCHEDULED:
            raise RoundNotSchedulable(f"Round {round_.round_id} is {round_.status}")
        if round_.start_time <= utcnow():
            raise SignupClosed(f"Round {round_.round_id} has already started")

    async def _check_not_signed_up(self, round_id: int, volunteer_id: int) -> None:
        existing = await self.db.execute(
            select(func.count(RoundSignup.signup_id))
            .where(RoundSignup.round_id == round_id)
            .where(RoundSignup.volunteer_id == volunteer_id)
            .where(RoundSignup.status.in_(SignupStatus.ACTIVE))
        )
        if existing.scalar_one() > 0:
            raise AlreadySignedUp()

    async def withdraw(
        self, signup_id: int, volunteer_id: int | None, enforce_cutoff: bool = True
    ) -> RoundSignup:
        """Cancel a sign-up; a freed confirmed seat is re-drawn.

        Args:
            signup_id: Signup ID
            volunteer_id: Owner withdrawing, or None for an administrator
            enforce_cutoff: Refuse inside SIGNUP_CANCEL_CUTOFF_HOURS of the start

        Raises:
            SignupNotFound: Signup does not exist
            NotOwner: Signup belongs to another volunteer
            InvalidTransition: Signup is not active
            SignupClosed: Too close to the round start
        """
        signup = await self.get_signup(signup_id)
        if volunteer_id is not None and signup.volunteer_id != volunteer_id:
            raise NotOwner(f"Signup {signup_id} belongs to another volunteer")
        if signup.status not in SignupStatus.ACTIVE:
            raise InvalidTransition(f"Signup {signup_id} is {signup.status}")

        round_id = signup.round_id
        previous = signup.status
        round_ = await self._get_round(round_id)

        if enforce_cutoff:
            cutoff = timedelta(hours=settings.SIGNUP_CANCEL_CUTOFF_HOURS)
            if round_.start_time - utcnow() < cutoff:
                raise SignupClosed(
                    f"Cannot withdraw less than {settings.SIGNUP_CANCEL_CUTOFF_HOURS} "
                    f"hours before the round"
                )

        try:
            await self._signup_cas(signup_id, (previous,), SignupStatus.CANCELLED)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Signup {signup_id} withdrawn from round {round_id} (was {previous})")
        invalidate_round_status(round_id)

        if (
            previous == SignupStatus.CONFIRMED
            and signup.requested_role == SignupRole.VOLUNTEER
            and round_.status == RoundStatus.SCHEDULED
        ):
            await self.run_lottery(round_id)

        return await self.get_signup(signup_id)

    # ==================== Lottery ====================

    async def run_lottery(self, round_id: int) -> tuple[list[RoundSignup], int]:
        """Fill the open participant seats of a round from its waitlist.

        Draws min(open seats, waitlisted) sign-ups uniformly without
        replacement. Running it with nobody waitlisted is a no-op.

        Returns:
            Tuple of (newly confirmed signups, still waitlisted count)

        Raises:
            RoundNotFound: Round does not exist
            RoundNotSchedulable: Round is not SCHEDULED
        """
        selected_ids = await self._with_round_guard(round_id, self._draw)

        if selected_ids:
            logger.info(
                f"Lottery for round {round_id} confirmed {len(selected_ids)} signups: "
                f"{selected_ids}"
            )
            invalidate_round_status(round_id)
        else:
            logger.info(f"Lottery for round {round_id} had no seats or no waitlist")

        selected = []
        for signup_id in selected_ids:
            selected.append(await self.get_signup(signup_id))
        remaining = await count_signups(self.db, round_id, SignupStatus.WAITLISTED)
        return selected, remaining

    async def _draw(self, round_: Round) -> list[int]:
        if round_.status != RoundStatus.SCHEDULED:
            raise RoundNotSchedulable(f"Round {round_.round_id} is {round_.status}")

        confirmed = await count_participants(self.db, round_.round_id)
        open_seats = max(0, round_.max_participants - confirmed)

        result = await self.db.execute(
            select(RoundSignup.signup_id)
            .where(RoundSignup.round_id == round_.round_id)
            .where(RoundSignup.status == SignupStatus.WAITLISTED)
            .where(RoundSignup.requested_role == SignupRole.VOLUNTEER)
            .order_by(RoundSignup.signup_id.asc())
        )
        waitlisted = list(result.scalars().all())

        if open_seats == 0 or not waitlisted:
            return []
        if open_seats >= len(waitlisted):
            chosen = waitlisted
        else:
            chosen = sorted(self.rng.sample(waitlisted, open_seats))

        for signup_id in chosen:
            await self._signup_cas(signup_id, (SignupStatus.WAITLISTED,), SignupStatus.CONFIRMED)
        return chosen

    # ==================== Admin overrides ====================

    async def confirm_signup(self, signup_id: int) -> RoundSignup:
        """Confirm a waitlisted sign-up outside the lottery.

        Raises:
            SignupNotFound: Signup does not exist
            InvalidTransition: Signup is not WAITLISTED
            RoundNotSchedulable: Round is not SCHEDULED
            RoundFull: No participant seat left
            RoleSeatTaken: The team lead or clinician seat is already filled
        """
        signup = await self.get_signup(signup_id)
        if signup.status == SignupStatus.CONFIRMED:
            return signup
        if signup.status != SignupStatus.WAITLISTED:
            raise InvalidTransition(f"Signup {signup_id} is {signup.status}")
        round_id = signup.round_id
        role = signup.requested_role

        async def confirm(round_: Round) -> None:
            if round_.status != RoundStatus.SCHEDULED:
                raise RoundNotSchedulable(f"Round {round_id} is {round_.status}")
            if role in SignupRole.SEATED:
                if await count_signups(self.db, round_id, SignupStatus.CONFIRMED, role) > 0:
                    raise RoleSeatTaken(f"Round {round_id} already has a {role.lower()} assigned")
            else:
                confirmed = await count_participants(self.db, round_id)
                if confirmed >= round_.max_participants:
                    raise RoundFull(
                        f"Round {round_id} is full "
                        f"({confirmed}/{round_.max_participants} participants)"
                    )
            await self._signup_cas(signup_id, (SignupStatus.WAITLISTED,), SignupStatus.CONFIRMED)

        await self._with_round_guard(round_id, confirm)

        logger.info(f"Signup {signup_id} confirmed for round {round_id} by admin")
        invalidate_round_status(round_id)
        return await self.get_signup(signup_id)

    async def reject_signup(self, signup_id: int) -> RoundSignup:
        """Reject an active sign-up; a freed confirmed seat is re-drawn."""
        signup = await self.get_signup(signup_id)
        if signup.status == SignupStatus.REJECTED:
            return signup
        if signup.status not in SignupStatus.ACTIVE:
            raise InvalidTransition(f"Signup {signup_id} is {signup.status}")
        round_id = signup.round_id
        previous = signup.status

        try:
            await self._signup_cas(signup_id, (previous,), SignupStatus.REJECTED)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Signup {signup_id} rejected for round {round_id} (was {previous})")
        invalidate_round_status(round_id)

        if previous == SignupStatus.CONFIRMED and signup.requested_role == SignupRole.VOLUNTEER:
            round_ = await self._get_round(round_id)
            if round_.status == RoundStatus.SCHEDULED:
                await self.run_lottery(round_id)

        return await self.get_signup(signup_id)

    # ==================== Guarded writes ====================

    async def _with_round_guard(self, round_id: int, operation):
        """Run operation(round) under the round guard, retrying lost version checks."""
        attempt = 0
        while True:
            attempt += 1
            try:
                round_ = await lock_round(self.db, round_id)
                outcome = await operation(round_)
                await self.db.commit()
                return outcome
            except ConcurrencyError:
                await self.db.rollback()
                if attempt >= self.retry_attempts:
                    raise
                logger.info(
                    f"Round {round_id} version conflict, retry {attempt}/{self.retry_attempts}"
                )
            except Exception:
                await self.db.rollback()
                raise

    async def _signup_cas(self, signup_id: int, expected: tuple[str, ...], new_status: str) -> None:
        result = await self.db.execute(
            update(RoundSignup)
            .where(RoundSignup.signup_id == signup_id)
            .where(RoundSignup.status.in_(expected))
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyError(f"Signup {signup_id} changed, refresh and retry")
