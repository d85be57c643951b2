"""Round and sign-up schemas for request/response validation."""

from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, Field, model_validator


def _as_naive_utc(value: datetime | None) -> datetime | None:
    """Round times are stored as naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_naive_utc)]


class RoundCreate(BaseModel):
    """Schema for round creation request."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    start_time: UtcDatetime
    end_time: UtcDatetime
    location: str = Field(..., min_length=1, max_length=255)
    max_participants: int = Field(..., ge=0)
    order_capacity: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_window(self) -> "RoundCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class RoundUpdate(BaseModel):
    """Partial round update; omitted fields are left unchanged."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    start_time: UtcDatetime | None = None
    end_time: UtcDatetime | None = None
    location: str | None = Field(default=None, min_length=1, max_length=255)
    max_participants: int | None = Field(default=None, ge=0)
    order_capacity: int | None = Field(default=None, ge=0)


class RoundStateUpdate(BaseModel):
    status: str


class RoundResponse(BaseModel):
    """Schema for round response."""

    round_id: int
    title: str
    description: str | None
    start_time: datetime
    end_time: datetime
    location: str
    max_participants: int
    order_capacity: int
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RoundListResponse(BaseModel):
    rounds: list[RoundResponse]
    total: int


class RoundMutationResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str
    round: RoundResponse


class RoundCapacityStatus(BaseModel):
    """Capacity figures of a round (read projection)."""

    round_id: int
    status: str
    order_capacity: int
    current_order_count: int
    available_order_slots: int
    max_participants: int
    current_participants: int
    available_participant_slots: int
    waitlisted: int
    has_team_lead: bool = False
    has_clinician: bool = False
    is_consistent: bool  # True if neither capacity is exceeded


class AutoAssignResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str
    bound: int
    skipped: int


class SignupCreate(BaseModel):
    requested_role: str | None = None


class SignupResponse(BaseModel):
    """Schema for sign-up response."""

    signup_id: int
    round_id: int
    volunteer_id: int
    requested_role: str
    status: str
    signup_time: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SignupMutationResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str
    signup: SignupResponse


class SignupListResponse(BaseModel):
    signups: list[SignupResponse]
    total: int


class LotteryResponse(BaseModel):
    status: Literal["success"] = "success"
    message: str
    round_id: int
    selected: list[SignupResponse]
    remaining_waitlisted: int
