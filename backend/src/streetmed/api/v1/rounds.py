"""Round API endpoints: registry, capacity status, sign-ups and lottery."""

from fastapi import APIRouter, Query, status

from streetmed.api.deps import (
    AdminUserId,
    CurrentUserId,
    DbSession,
    IsAdmin,
    RedisServiceDep,
)
from streetmed.models.round import SignupStatus
from streetmed.schemas.round import (
    AutoAssignResponse,
    LotteryResponse,
    RoundCapacityStatus,
    RoundCreate,
    RoundListResponse,
    RoundMutationResponse,
    RoundResponse,
    RoundStateUpdate,
    RoundUpdate,
    SignupCreate,
    SignupListResponse,
    SignupMutationResponse,
    SignupResponse,
)
from streetmed.services.admission_service import AdmissionService
from streetmed.services.lottery_service import LotteryService
from streetmed.services.round_service import RoundService

router = APIRouter()


# ==================== Registry ====================


@router.get("", response_model=RoundListResponse)
async def list_rounds(
    db: DbSession,
    status_filter: str | None = Query(None, alias="status"),
    upcoming_only: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=100),
):
    """List rounds by start time."""
    service = RoundService(db)
    rounds, total = await service.list_rounds(
        status=status_filter,
        upcoming_only=upcoming_only,
        skip=skip,
        limit=limit,
    )
    return RoundListResponse(
        rounds=[RoundResponse.model_validate(r) for r in rounds],
        total=total,
    )


@router.post("", response_model=RoundMutationResponse, status_code=status.HTTP_201_CREATED)
async def create_round(round_data: RoundCreate, db: DbSession, admin_id: AdminUserId):
    """Create a new round (admin only)."""
    service = RoundService(db)
    round_ = await service.create(round_data)
    return RoundMutationResponse(
        message=f"Round {round_.round_id} created",
        round=RoundResponse.model_validate(round_),
    )


@router.post("/auto-assign", response_model=AutoAssignResponse)
async def auto_assign_orders(db: DbSession, redis_service: RedisServiceDep, admin_id: AdminUserId):
    """Place unbound orders into upcoming rounds (admin only)."""
    service = AdmissionService(db, redis_service)
    bound, skipped = await service.auto_assign_unbound_orders()
    return AutoAssignResponse(
        message=f"Bound {bound} orders, skipped {skipped}",
        bound=bound,
        skipped=skipped,
    )


# ==================== Sign-ups by ID ====================


@router.get("/signups/mine", response_model=SignupListResponse)
async def get_my_signups(db: DbSession, volunteer_id: CurrentUserId):
    service = LotteryService(db)
    signups, total = await service.list_volunteer_signups(volunteer_id)
    return SignupListResponse(
        signups=[SignupResponse.model_validate(s) for s in signups],
        total=total,
    )


@router.put("/signups/{signup_id}/confirm", response_model=SignupMutationResponse)
async def confirm_signup(signup_id: int, db: DbSession, admin_id: AdminUserId):
    """Confirm a waitlisted sign-up outside the lottery (admin only)."""
    service = LotteryService(db)
    signup = await service.confirm_signup(signup_id)
    return SignupMutationResponse(
        message=f"Signup {signup_id} confirmed",
        signup=SignupResponse.model_validate(signup),
    )


@router.put("/signups/{signup_id}/reject", response_model=SignupMutationResponse)
async def reject_signup(signup_id: int, db: DbSession, admin_id: AdminUserId):
    service = LotteryService(db)
    signup = await service.reject_signup(signup_id)
    return SignupMutationResponse(
        message=f"Signup {signup_id} rejected",
        signup=SignupResponse.model_validate(signup),
    )


@router.delete("/signups/{signup_id}", response_model=SignupMutationResponse)
async def withdraw_signup(
    signup_id: int,
    db: DbSession,
    volunteer_id: CurrentUserId,
    is_admin: IsAdmin,
):
    """Withdraw a sign-up.

    Volunteers may withdraw their own sign-ups until the cutoff before the
    round starts; admins may withdraw any sign-up at any time.
    """
    service = LotteryService(db)
    if is_admin:
        signup = await service.withdraw(signup_id, None, enforce_cutoff=False)
    else:
        signup = await service.withdraw(signup_id, volunteer_id)
    return SignupMutationResponse(
        message=f"Signup {signup_id} withdrawn",
        signup=SignupResponse.model_validate(signup),
    )


# ==================== Single round ====================


@router.get("/{round_id}", response_model=RoundResponse)
async def get_round(round_id: int, db: DbSession):
    service = RoundService(db)
    return RoundResponse.model_validate(await service.get(round_id))


@router.get("/{round_id}/status", response_model=RoundCapacityStatus)
async def get_round_status(round_id: int, db: DbSession):
    """Order and participant capacity figures of a round."""
    service = AdmissionService(db)
    return await service.get_round_status(round_id)


@router.put("/{round_id}", response_model=RoundMutationResponse)
async def update_round(
    round_id: int,
    round_data: RoundUpdate,
    db: DbSession,
    admin_id: AdminUserId,
):
    """Edit a round; capacities cannot drop below current usage (admin only)."""
    service = RoundService(db)
    round_ = await service.update(round_id, round_data)
    return RoundMutationResponse(
        message=f"Round {round_id} updated",
        round=RoundResponse.model_validate(round_),
    )


@router.post("/{round_id}/cancel", response_model=RoundMutationResponse)
async def cancel_round(
    round_id: int,
    db: DbSession,
    redis_service: RedisServiceDep,
    admin_id: AdminUserId,
):
    """Cancel a round, releasing its sign-ups and bound orders (admin only)."""
    service = RoundService(db, redis_service)
    round_ = await service.cancel(round_id)
    return RoundMutationResponse(
        message=f"Round {round_id} cancelled",
        round=RoundResponse.model_validate(round_),
    )


@router.put("/{round_id}/state", response_model=RoundMutationResponse)
async def update_round_state(
    round_id: int,
    update: RoundStateUpdate,
    db: DbSession,
    redis_service: RedisServiceDep,
    admin_id: AdminUserId,
):
    service = RoundService(db, redis_service)
    round_ = await service.transition(round_id, update.status.upper())
    return RoundMutationResponse(
        message=f"Round {round_id} is now {round_.status}",
        round=RoundResponse.model_validate(round_),
    )


@router.post("/{round_id}/lottery", response_model=LotteryResponse)
async def run_lottery(round_id: int, db: DbSession, admin_id: AdminUserId):
    """Fill open participant seats from the waitlist (admin only)."""
    service = LotteryService(db)
    selected, remaining = await service.run_lottery(round_id)
    return LotteryResponse(
        message=f"Lottery selected {len(selected)} volunteers",
        round_id=round_id,
        selected=[SignupResponse.model_validate(s) for s in selected],
        remaining_waitlisted=remaining,
    )


@router.get("/{round_id}/signups", response_model=SignupListResponse)
async def list_round_signups(
    round_id: int,
    db: DbSession,
    admin_id: AdminUserId,
    status_filter: str | None = Query(None, alias="status"),
):
    service = LotteryService(db)
    signups, total = await service.list_round_signups(round_id, status=status_filter)
    return SignupListResponse(
        signups=[SignupResponse.model_validate(s) for s in signups],
        total=total,
    )


@router.post(
    "/{round_id}/signup",
    response_model=SignupMutationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def signup_for_round(
    round_id: int,
    request: SignupCreate,
    db: DbSession,
    volunteer_id: CurrentUserId,
):
    """Join the waitlist of an upcoming round, or take its team lead or clinician seat."""
    service = LotteryService(db)
    signup = await service.signup(round_id, volunteer_id, request.requested_role)
    if signup.status == SignupStatus.CONFIRMED:
        message = f"Confirmed for round {round_id} as {signup.requested_role}"
    else:
        message = f"Waitlisted for round {round_id}"
    return SignupMutationResponse(
        message=message,
        signup=SignupResponse.model_validate(signup),
    )
