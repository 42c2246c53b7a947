from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.transaction import TransactionStatus


class TransactionCreateIn(BaseModel):
    event_id: str
    quantity: int = Field(default=1, ge=1, le=50)
    points: int = Field(default=0, ge=0)
    coupon_code: Optional[str] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    event_id: str
    coupon_id: Optional[str] = None

    quantity: int
    unit_price: int
    subtotal: int
    discount_amount: int
    points_used: int
    total_amount: int

    status: TransactionStatus
    payment_deadline: datetime
    payment_proof: Optional[str] = None
    decided_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime


class TransactionsListOut(BaseModel):
    items: List[TransactionOut] = Field(default_factory=list)
    limit: int
    offset: int


class TransactionDecisionIn(BaseModel):
    status: TransactionStatus


class TransactionEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    from_status: Optional[str] = None
    to_status: str
    actor_user_id: Optional[str] = None
    meta: dict = Field(default_factory=dict)
    created_at: datetime


class SweepOut(BaseModel):
    expired: int
    cancelled: int
    skipped: int
    failed: int
    points_expired: int
    total: int
