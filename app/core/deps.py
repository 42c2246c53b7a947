from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.db import get_db
from app.core.security import ACCESS, TokenError, decode_token
from app.models.user import User, UserRole

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def load_active_user(db: AsyncSession, user_id: str) -> User:
    res = await db.execute(select(User).where(User.id == str(user_id)))
    user = res.scalar_one_or_none()

    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User inactive")
    return user


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    try:
        payload = decode_token(token, expected_type=ACCESS)
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
        )

    return await load_active_user(db, payload["sub"])


def require_organizer(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role not in (UserRole.organizer, UserRole.admin):
        raise HTTPException(status_code=403, detail="Organizer only")
    return current_user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return current_user


def require_cron_key(x_cron_key: str | None = Header(default=None)) -> None:
    if not x_cron_key or not secrets.compare_digest(x_cron_key, settings.CRON_API_KEY):
        raise HTTPException(status_code=401, detail="Invalid cron key")
