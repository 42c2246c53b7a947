# app/models/coupon.py
from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    String,
    func,
)

from app.core.db import Base


class DiscountType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class CouponKind(str, enum.Enum):
    SYSTEM_PROMOTION = "SYSTEM_PROMOTION"
    ORGANIZER_VOUCHER = "ORGANIZER_VOUCHER"
    REFERRAL_REWARD = "REFERRAL_REWARD"


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="coupons_used_count_min_chk"),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses",
            name="coupons_used_count_max_chk",
        ),
        CheckConstraint("discount_value > 0", name="coupons_discount_value_chk"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(64), nullable=False, unique=True)

    kind = Column(SAEnum(CouponKind), nullable=False, default=CouponKind.ORGANIZER_VOUCHER)

    discount_type = Column(SAEnum(DiscountType), nullable=False)
    discount_value = Column(Integer, nullable=False)

    # NULL = unlimited
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)

    # optional scope: bound to one event and/or one user
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True)

    organizer_id = Column(String(36), ForeignKey("users.id"), nullable=True)

    # NULL = never expires
    expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
