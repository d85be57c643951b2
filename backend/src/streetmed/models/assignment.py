"""Assignment ledger model."""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from streetmed.core.database import Base
from streetmed.models.base import utcnow


class AssignmentStatus:
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    ACTIVE = (ACCEPTED, IN_PROGRESS)


_ACTIVE_PREDICATE = text("status IN ('ACCEPTED', 'IN_PROGRESS')")


class OrderAssignment(Base):
    """Binding of one volunteer to one order.

    Rows are never deleted. order_id carries no foreign key so the ledger
    outlives administrative deletion of the order.
    """

    __tablename__ = "order_assignments"

    assignment_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    order_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    volunteer_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AssignmentStatus.ACCEPTED,
    )
    accepted_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    @property
    def is_active(self) -> bool:
        return self.status in AssignmentStatus.ACTIVE

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACCEPTED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name="chk_assignment_status",
        ),
        # At most one active assignment per order
        Index(
            "uq_assignments_active_order",
            "order_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
        Index("idx_assignments_order", "order_id"),
        Index("idx_assignments_volunteer_status", "volunteer_id", "status"),
    )
