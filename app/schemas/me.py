from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class MeOut(BaseModel):
    id: str
    email: str
    name: str
    role: str
    referral_code: str
    is_active: bool
    created_at: datetime

    points_balance: int
