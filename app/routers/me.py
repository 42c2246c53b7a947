from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user
from app.models.user import User
from app.schemas.me import MeOut
from app.services.points import PointsLedger

router = APIRouter(tags=["Me"])


@router.get("/me", response_model=MeOut)
async def me(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MeOut:
    balance = await PointsLedger(db).get_balance(current_user.id)
    return MeOut(
        id=current_user.id,
        email=current_user.email,
        name=current_user.name,
        role=current_user.role.value,
        referral_code=current_user.referral_code,
        is_active=bool(current_user.is_active),
        created_at=current_user.created_at,
        points_balance=int(balance),
    )
