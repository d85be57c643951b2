"""Order and order item models."""

from datetime import datetime
from typing import List

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from streetmed.core.database import Base
from streetmed.models.base import utcnow

GUEST_USER_ID = -1


class OrderStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    TERMINAL = frozenset({COMPLETED, CANCELLED})
    ALL = frozenset({PENDING, PROCESSING, COMPLETED, CANCELLED})


class Order(Base):
    """A delivery request placed by a client or guest."""

    __tablename__ = "orders"

    order_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    client_ip: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    round_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("rounds.round_id"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    delivery_address: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    phone_number: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    request_time: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    delivery_time: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.item_id",
        lazy="selectin",
    )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None or self.user_id == GUEST_USER_ID

    @property
    def is_terminal(self) -> bool:
        return self.status in OrderStatus.TERMINAL

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'CANCELLED')",
            name="chk_order_status",
        ),
        # Pending queue: WHERE status = 'PENDING' ORDER BY request_time
        Index("idx_orders_status_request_time", "status", "request_time"),
        Index("idx_orders_round_status", "round_id", "status"),
        Index("idx_orders_user_status", "user_id", "status"),
    )


class OrderItem(Base):
    """A single line of an order."""

    __tablename__ = "order_items"

    item_id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
    )
    item_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    size: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    is_custom: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_order_item_quantity_positive"),
        Index("idx_order_items_order", "order_id"),
    )
