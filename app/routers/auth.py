from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select

from app.core.db import get_db
from app.core.errors import TicketingError, to_http_exception
from app.core.deps import load_active_user
from app.core.security import REFRESH, TokenError, decode_token, issue_token_pair, verify_password
from app.models.user import User
from app.schemas.auth import RefreshIn, RegisterIn, TokenPair
from app.schemas.me import MeOut
from app.services.accounts import register_user

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=MeOut, status_code=201)
async def register(
    payload: RegisterIn,
    db: AsyncSession = Depends(get_db),
) -> MeOut:
    try:
        user = await register_user(
            db,
            email=payload.email,
            password=payload.password,
            name=payload.name,
            role=payload.role,
            referral_code=payload.referral_code,
        )
    except TicketingError as e:
        raise to_http_exception(e)

    return MeOut(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value,
        referral_code=user.referral_code,
        is_active=bool(user.is_active),
        created_at=user.created_at,
        points_balance=int(user.points_balance),
    )


@router.post("/login", response_model=TokenPair)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
):
    email = form_data.username.strip().lower()
    password = form_data.password

    res = await db.execute(select(User).where(func.lower(User.email) == email))
    user = res.scalar_one_or_none()

    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User is inactive")

    if not verify_password(password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    return issue_token_pair(user_id=user.id, role=user.role.value)


@router.post("/refresh", response_model=TokenPair)
async def refresh(
    payload: RefreshIn,
    db: AsyncSession = Depends(get_db),
):
    try:
        claims = decode_token(payload.refresh_token, expected_type=REFRESH)
    except TokenError as e:
        raise HTTPException(status_code=401, detail=str(e))

    user = await load_active_user(db, claims["sub"])
    return issue_token_pair(user_id=user.id, role=user.role.value)
