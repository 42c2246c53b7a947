# app/schemas/coupons.py
from __future__ import annotations

from datetime import datetime
from pydantic import BaseModel, Field

from app.models.coupon import CouponKind, DiscountType


class CouponCreateRequest(BaseModel):
    code: str | None = Field(default=None, min_length=3, max_length=64)
    discount_type: DiscountType
    discount_value: int = Field(..., ge=1)
    max_uses: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None
    event_id: str | None = None
    user_id: str | None = None


class CouponResponse(BaseModel):
    id: str
    code: str
    kind: CouponKind
    discount_type: DiscountType
    discount_value: int
    max_uses: int | None
    used_count: int
    is_active: bool
    event_id: str | None
    user_id: str | None
    organizer_id: str | None
    expires_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class CouponValidateRequest(BaseModel):
    code: str
    event_id: str
    quantity: int = Field(default=1, ge=1, le=50)
    points: int = Field(default=0, ge=0)


class CouponValidateResponse(BaseModel):
    valid: bool
    reason: str | None = None
    code: str

    # price preview, present when valid
    subtotal: int | None = None
    discount_amount: int | None = None
    points_used: int | None = None
    total_amount: int | None = None
