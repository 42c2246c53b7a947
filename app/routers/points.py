from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user
from app.models.user import User
from app.schemas.points import PointHistoryOut, PointRecordOut, PointsBalanceOut
from app.services.points import PointsLedger

router = APIRouter(prefix="/points", tags=["Points"])


@router.get("/me", response_model=PointsBalanceOut)
async def my_balance(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    balance = await PointsLedger(db).get_balance(current_user.id)
    return PointsBalanceOut(user_id=current_user.id, balance=balance)


@router.get("/me/history", response_model=PointHistoryOut)
async def my_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = await PointsLedger(db).get_history(current_user.id, limit=limit, offset=offset)
    return PointHistoryOut(
        items=[PointRecordOut.model_validate(r) for r in rows],
        offset=offset,
        limit=limit,
    )
