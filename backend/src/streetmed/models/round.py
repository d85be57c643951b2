"""Round and round sign-up models."""

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from streetmed.core.database import Base
from streetmed.models.base import TimestampMixin, utcnow

DEFAULT_ORDER_CAPACITY = 20


class RoundStatus:
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    TERMINAL = frozenset({COMPLETED, CANCELLED})


class SignupStatus:
    WAITLISTED = "WAITLISTED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    ACTIVE = (WAITLISTED, CONFIRMED)


class SignupRole:
    VOLUNTEER = "VOLUNTEER"
    TEAM_LEAD = "TEAM_LEAD"
    CLINICIAN = "CLINICIAN"

    ALL = frozenset({VOLUNTEER, TEAM_LEAD, CLINICIAN})
    # One confirmed seat each per round, outside max_participants
    SEATED = (TEAM_LEAD, CLINICIAN)


class Round(Base, TimestampMixin):
    """A scheduled outing with participant and order capacity."""

    __tablename__ = "rounds"

    round_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    start_time: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    end_time: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    location: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    max_participants: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    order_capacity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_ORDER_CAPACITY,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RoundStatus.SCHEDULED,
    )
    # Bumped by every capacity-guarded write (binds, confirmations, edits)
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="chk_round_time"),
        CheckConstraint("max_participants >= 0", name="chk_round_max_participants"),
        CheckConstraint("order_capacity >= 0", name="chk_round_order_capacity"),
        Index("idx_rounds_status_start", "status", "start_time"),
    )


_ACTIVE_SIGNUP_PREDICATE = text("status IN ('WAITLISTED', 'CONFIRMED')")
_SEATED_ROLE_PREDICATE = text(
    "status = 'CONFIRMED' AND requested_role IN ('TEAM_LEAD', 'CLINICIAN')"
)


class RoundSignup(Base):
    """A volunteer's request to take part in a round."""

    __tablename__ = "round_signups"

    signup_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    round_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("rounds.round_id"),
        nullable=False,
    )
    volunteer_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    requested_role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SignupRole.VOLUNTEER,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SignupStatus.WAITLISTED,
    )
    signup_time: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        # One active sign-up per volunteer per round
        Index(
            "uq_signups_active_round_volunteer",
            "round_id",
            "volunteer_id",
            unique=True,
            postgresql_where=_ACTIVE_SIGNUP_PREDICATE,
            sqlite_where=_ACTIVE_SIGNUP_PREDICATE,
        ),
        # One confirmed team lead and one confirmed clinician per round
        Index(
            "uq_signups_round_role_seat",
            "round_id",
            "requested_role",
            unique=True,
            postgresql_where=_SEATED_ROLE_PREDICATE,
            sqlite_where=_SEATED_ROLE_PREDICATE,
        ),
        Index("idx_signups_round_status", "round_id", "status"),
        Index("idx_signups_volunteer", "volunteer_id"),
    )
