from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.point import PointKind


class PointsBalanceOut(BaseModel):
    user_id: str
    balance: int


class PointRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: PointKind
    amount: int
    expires_at: datetime
    description: Optional[str] = None
    related_event_id: Optional[str] = None
    related_transaction_id: Optional[str] = None
    created_at: datetime


class PointHistoryOut(BaseModel):
    items: List[PointRecordOut] = Field(default_factory=list)
    offset: int
    limit: int
