"""Tests for the signup desk and the participant lottery."""

import asyncio
import random
from datetime import timedelta

import pytest

from streetmed.models import RoundStatus, SignupRole, SignupStatus
from streetmed.services.admission_service import (
    AdmissionService,
    count_participants,
    count_signups,
)
from streetmed.services.errors import (
    AlreadySignedUp,
    ConcurrencyError,
    InvalidTransition,
    NotOwner,
    RoleSeatTaken,
    RoundFull,
    RoundNotSchedulable,
    SignupClosed,
    ValidationFailed,
)
from streetmed.services.lottery_service import LotteryService


class TestSignupDesk:
    """Test sign-up and withdrawal."""

    @pytest.mark.asyncio
    async def test_signup_waitlists_volunteer(self, db, make_round):
        round_id = await make_round()

        signup = await LotteryService(db).signup(round_id, volunteer_id=5)

        assert signup.status == SignupStatus.WAITLISTED
        assert signup.requested_role == SignupRole.VOLUNTEER

    @pytest.mark.asyncio
    async def test_second_active_signup_rejected(self, db, make_round):
        round_id = await make_round()
        service = LotteryService(db)
        await service.signup(round_id, volunteer_id=5)

        with pytest.raises(AlreadySignedUp):
            await service.signup(round_id, volunteer_id=5, requested_role=SignupRole.CLINICIAN)

    @pytest.mark.asyncio
    async def test_signup_again_after_withdrawal(self, db, make_round):
        round_id = await make_round()
        service = LotteryService(db)
        first = await service.signup(round_id, volunteer_id=5)
        await service.withdraw(first.signup_id, volunteer_id=5)

        second = await service.signup(round_id, volunteer_id=5)

        assert second.signup_id != first.signup_id
        assert second.status == SignupStatus.WAITLISTED

    @pytest.mark.asyncio
    async def test_unknown_role(self, db, make_round):
        round_id = await make_round()

        with pytest.raises(ValidationFailed):
            await LotteryService(db).signup(round_id, volunteer_id=5, requested_role="DRIVER")

    @pytest.mark.asyncio
    async def test_signup_closed_rounds(self, db, make_round):
        started = await make_round(starts_in=timedelta(hours=-1))
        cancelled = await make_round(status=RoundStatus.CANCELLED)
        service = LotteryService(db)

        with pytest.raises(SignupClosed):
            await service.signup(started, volunteer_id=5)
        with pytest.raises(RoundNotSchedulable):
            await service.signup(cancelled, volunteer_id=5)

    @pytest.mark.asyncio
    async def test_withdraw_inside_cutoff(self, db, make_round, make_signup):
        round_id = await make_round(starts_in=timedelta(hours=10))
        signup_id = await make_signup(round_id, 5)
        service = LotteryService(db)

        with pytest.raises(SignupClosed):
            await service.withdraw(signup_id, volunteer_id=5)

        # Administrators are not bound by the cutoff
        signup = await service.withdraw(signup_id, None, enforce_cutoff=False)
        assert signup.status == SignupStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_withdraw_other_volunteers_signup(self, db, make_round, make_signup):
        round_id = await make_round()
        signup_id = await make_signup(round_id, 5)

        with pytest.raises(NotOwner):
            await LotteryService(db).withdraw(signup_id, volunteer_id=6)

    @pytest.mark.asyncio
    async def test_withdrawn_seat_is_redrawn(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=1)
        confirmed = await make_signup(round_id, 5, status=SignupStatus.CONFIRMED)
        waiting = await make_signup(round_id, 6)
        service = LotteryService(db)

        await service.withdraw(confirmed, volunteer_id=5)

        promoted = await service.get_signup(waiting)
        assert promoted.status == SignupStatus.CONFIRMED


class TestRoleSeats:
    """Test the single team lead and clinician seat of a round."""

    @pytest.mark.asyncio
    async def test_team_lead_confirmed_on_signup(self, db, make_round):
        round_id = await make_round()

        signup = await LotteryService(db).signup(
            round_id, volunteer_id=5, requested_role=SignupRole.TEAM_LEAD
        )

        assert signup.status == SignupStatus.CONFIRMED
        assert signup.requested_role == SignupRole.TEAM_LEAD
        status = await AdmissionService(db).get_round_status(round_id, use_cache=False)
        assert status.has_team_lead is True
        assert status.has_clinician is False
        assert status.current_participants == 0

    @pytest.mark.asyncio
    async def test_second_team_lead_refused(self, db, make_round):
        round_id = await make_round()
        service = LotteryService(db)
        await service.signup(round_id, volunteer_id=5, requested_role=SignupRole.TEAM_LEAD)

        with pytest.raises(RoleSeatTaken):
            await service.signup(round_id, volunteer_id=6, requested_role=SignupRole.TEAM_LEAD)

        clinician = await service.signup(
            round_id, volunteer_id=6, requested_role=SignupRole.CLINICIAN
        )
        assert clinician.status == SignupStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_role_seats_outside_participant_cap(self, db, make_round):
        round_id = await make_round(max_participants=1)
        service = LotteryService(db)
        await service.signup(round_id, volunteer_id=1, requested_role=SignupRole.TEAM_LEAD)
        await service.signup(round_id, volunteer_id=2, requested_role=SignupRole.CLINICIAN)
        await service.signup(round_id, volunteer_id=3)

        selected, remaining = await service.run_lottery(round_id)

        assert [s.volunteer_id for s in selected] == [3]
        assert remaining == 0
        assert await count_participants(db, round_id) == 1
        assert await count_signups(db, round_id, SignupStatus.CONFIRMED) == 3

    @pytest.mark.asyncio
    async def test_withdrawn_lead_frees_seat_without_redraw(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=1)
        await make_signup(round_id, 1, status=SignupStatus.CONFIRMED)
        waiting = await make_signup(round_id, 2)
        service = LotteryService(db)
        lead = await service.signup(round_id, volunteer_id=3, requested_role=SignupRole.TEAM_LEAD)

        await service.withdraw(lead.signup_id, volunteer_id=3)

        assert (await service.get_signup(waiting)).status == SignupStatus.WAITLISTED
        replacement = await service.signup(
            round_id, volunteer_id=4, requested_role=SignupRole.TEAM_LEAD
        )
        assert replacement.status == SignupStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_role_seat_on_cancelled_round(self, db, make_round):
        round_id = await make_round(status=RoundStatus.CANCELLED)

        with pytest.raises(RoundNotSchedulable):
            await LotteryService(db).signup(
                round_id, volunteer_id=5, requested_role=SignupRole.CLINICIAN
            )

    @pytest.mark.asyncio
    async def test_confirm_waitlisted_lead_checks_seat(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=0)
        await make_signup(
            round_id, 1, status=SignupStatus.CONFIRMED, requested_role=SignupRole.TEAM_LEAD
        )
        waiting = await make_signup(round_id, 2, requested_role=SignupRole.TEAM_LEAD)

        with pytest.raises(RoleSeatTaken):
            await LotteryService(db).confirm_signup(waiting)

    @pytest.mark.asyncio
    async def test_concurrent_leads_fill_one_seat(self, session_maker, make_round):
        round_id = await make_round()

        async def attempt(volunteer_id):
            async with session_maker() as session:
                try:
                    await LotteryService(session, retry_attempts=10).signup(
                        round_id, volunteer_id, SignupRole.TEAM_LEAD
                    )
                    return True
                except (RoleSeatTaken, ConcurrencyError):
                    return False

        results = await asyncio.gather(*(attempt(v) for v in range(1, 6)))

        assert sum(results) == 1
        async with session_maker() as session:
            leads = await count_signups(
                session, round_id, SignupStatus.CONFIRMED, SignupRole.TEAM_LEAD
            )
            assert leads == 1


class TestLottery:
    """Test participant draws."""

    @pytest.mark.asyncio
    async def test_empty_waitlist_is_noop(self, db, make_round):
        round_id = await make_round(max_participants=3)

        selected, remaining = await LotteryService(db).run_lottery(round_id)

        assert selected == []
        assert remaining == 0

    @pytest.mark.asyncio
    async def test_everyone_confirmed_when_seats_suffice(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=5)
        for volunteer_id in (1, 2, 3):
            await make_signup(round_id, volunteer_id)

        selected, remaining = await LotteryService(db).run_lottery(round_id)

        assert len(selected) == 3
        assert all(s.status == SignupStatus.CONFIRMED for s in selected)
        assert remaining == 0

    @pytest.mark.asyncio
    async def test_draw_fills_only_open_seats(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=3)
        await make_signup(round_id, 1, status=SignupStatus.CONFIRMED)
        for volunteer_id in range(2, 8):
            await make_signup(round_id, volunteer_id)

        selected, remaining = await LotteryService(db).run_lottery(round_id)

        assert len(selected) == 2
        assert remaining == 4
        assert await count_signups(db, round_id, SignupStatus.CONFIRMED) == 3

    @pytest.mark.asyncio
    async def test_seeded_draw_is_deterministic(self, session_maker, make_round, make_signup):
        drawn = []
        for _ in range(2):
            round_id = await make_round(max_participants=2)
            for volunteer_id in range(1, 9):
                await make_signup(round_id, volunteer_id)
            async with session_maker() as session:
                service = LotteryService(session, rng=random.Random(1234))
                selected, _ = await service.run_lottery(round_id)
                drawn.append(sorted(s.volunteer_id for s in selected))

        assert drawn[0] == drawn[1]
        assert len(drawn[0]) == 2

    @pytest.mark.asyncio
    async def test_full_round_draws_nobody(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=1)
        await make_signup(round_id, 1, status=SignupStatus.CONFIRMED)
        await make_signup(round_id, 2)

        selected, remaining = await LotteryService(db).run_lottery(round_id)

        assert selected == []
        assert remaining == 1

    @pytest.mark.asyncio
    async def test_lottery_requires_scheduled_round(self, db, make_round):
        round_id = await make_round(status=RoundStatus.COMPLETED)

        with pytest.raises(RoundNotSchedulable):
            await LotteryService(db).run_lottery(round_id)

    @pytest.mark.asyncio
    async def test_concurrent_lotteries_respect_capacity(
        self, session_maker, make_round, make_signup
    ):
        round_id = await make_round(max_participants=3)
        for volunteer_id in range(1, 11):
            await make_signup(round_id, volunteer_id)

        async def attempt():
            async with session_maker() as session:
                try:
                    selected, _ = await LotteryService(session, retry_attempts=10).run_lottery(
                        round_id
                    )
                    return len(selected)
                except ConcurrencyError:
                    return 0

        results = await asyncio.gather(*(attempt() for _ in range(4)))

        assert sum(results) == 3
        async with session_maker() as session:
            assert await count_signups(session, round_id, SignupStatus.CONFIRMED) == 3


class TestAdminOverrides:
    """Test manual confirm and reject."""

    @pytest.mark.asyncio
    async def test_confirm_rechecks_capacity(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=1)
        first = await make_signup(round_id, 1)
        second = await make_signup(round_id, 2)
        service = LotteryService(db)

        confirmed = await service.confirm_signup(first)
        assert confirmed.status == SignupStatus.CONFIRMED

        with pytest.raises(RoundFull):
            await service.confirm_signup(second)

    @pytest.mark.asyncio
    async def test_reject_confirmed_backfills(self, db, make_round, make_signup):
        round_id = await make_round(max_participants=1)
        confirmed = await make_signup(round_id, 1, status=SignupStatus.CONFIRMED)
        waiting = await make_signup(round_id, 2)
        service = LotteryService(db)

        rejected = await service.reject_signup(confirmed)

        assert rejected.status == SignupStatus.REJECTED
        assert (await service.get_signup(waiting)).status == SignupStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirm_rejected_signup(self, db, make_round, make_signup):
        round_id = await make_round()
        signup_id = await make_signup(round_id, 1, status=SignupStatus.REJECTED)

        with pytest.raises(InvalidTransition):
            await LotteryService(db).confirm_signup(signup_id)

    @pytest.mark.asyncio
    async def test_list_signups(self, db, make_round, make_signup):
        round_id = await make_round()
        other_round = await make_round()
        await make_signup(round_id, 1)
        await make_signup(round_id, 2, status=SignupStatus.CONFIRMED)
        await make_signup(other_round, 1)
        service = LotteryService(db)

        signups, total = await service.list_round_signups(round_id)
        assert total == 2

        waitlisted, _ = await service.list_round_signups(round_id, status=SignupStatus.WAITLISTED)
        assert [s.volunteer_id for s in waitlisted] == [1]

        mine, mine_total = await service.list_volunteer_signups(1)
        assert mine_total == 2
