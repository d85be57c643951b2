"""SQLAlchemy ORM models."""

from streetmed.models.assignment import AssignmentStatus, OrderAssignment
from streetmed.models.base import TimestampMixin, UserRole
from streetmed.models.order import GUEST_USER_ID, Order, OrderItem, OrderStatus
from streetmed.models.round import Round, RoundSignup, RoundStatus, SignupRole, SignupStatus

__all__ = [
    "TimestampMixin",
    "UserRole",
    "GUEST_USER_ID",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderAssignment",
    "AssignmentStatus",
    "Round",
    "RoundStatus",
    "RoundSignup",
    "SignupRole",
    "SignupStatus",
]
