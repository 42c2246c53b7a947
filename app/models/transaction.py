from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum as SAEnum, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.db import Base


class TransactionStatus(str, enum.Enum):
    WAITING_PAYMENT = "WAITING_PAYMENT"
    WAITING_CONFIRMATION = "WAITING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS.get(self)


ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.WAITING_PAYMENT: frozenset(
        {TransactionStatus.WAITING_CONFIRMATION, TransactionStatus.EXPIRED}
    ),
    TransactionStatus.WAITING_CONFIRMATION: frozenset(
        {TransactionStatus.CONFIRMED, TransactionStatus.REJECTED, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.CONFIRMED: frozenset(),
    TransactionStatus.REJECTED: frozenset(),
    TransactionStatus.EXPIRED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}

# Transitions that hand seats, points and coupon uses back
REFUND_STATUSES = frozenset(
    {TransactionStatus.EXPIRED, TransactionStatus.REJECTED, TransactionStatus.CANCELLED}
)


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="transactions_quantity_chk"),
        CheckConstraint("points_used >= 0", name="transactions_points_used_chk"),
        CheckConstraint("total_amount >= 0", name="transactions_total_amount_chk"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    event_id: Mapped[str] = mapped_column(String(36), ForeignKey("events.id"), nullable=False)
    coupon_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("coupons.id"), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus),
        nullable=False,
        default=TransactionStatus.WAITING_PAYMENT,
    )

    payment_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payment_proof: Mapped[str | None] = mapped_column(String(500), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


Index("ix_transactions_status_deadline", Transaction.status, Transaction.payment_deadline)
Index("ix_transactions_status_updated", Transaction.status, Transaction.updated_at)
Index("ix_transactions_user_created", Transaction.user_id, Transaction.created_at.desc())
Index("ix_transactions_event", Transaction.event_id)
