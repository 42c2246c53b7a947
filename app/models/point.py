from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.db import Base


class PointKind(str, enum.Enum):
    # grants (positive)
    purchase_reward = "purchase_reward"
    refund = "refund"
    referral_bonus = "referral_bonus"
    cashback = "cashback"
    # debits (negative)
    consumption = "consumption"
    expiry = "expiry"


class PointRecord(Base):
    """
    Immutable ledger row.

    Positive rows are grant batches. Negative rows (consumption, expiry)
    reference the batch they draw from through source_record_id, so the
    remaining amount of a batch is its amount plus the sum of its children.
    """

    __tablename__ = "point_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    kind: Mapped[PointKind] = mapped_column(SAEnum(PointKind), nullable=False)

    # positive = grant, negative = consumption / expiry
    amount: Mapped[int] = mapped_column(Integer, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    source_record_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("point_records.id"),
        nullable=True,
    )

    related_event_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("events.id", ondelete="SET NULL"),
        nullable=True,
    )
    related_transaction_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


Index("ix_point_records_user_expires", PointRecord.user_id, PointRecord.expires_at)
Index("ix_point_records_source", PointRecord.source_record_id)
Index("ix_point_records_user_created", PointRecord.user_id, PointRecord.created_at.desc())
