from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utcnow
from app.core.config import settings
from app.core.db import atomic
from app.core.errors import ValidationError
from app.core.security import hash_password
from app.models.coupon import Coupon, CouponKind, DiscountType
from app.models.point import PointKind
from app.models.user import User, UserRole
from app.services.points import BONUS_POINT_TTL, ExpiryPolicy, PointsLedger

logger = logging.getLogger(__name__)


class AccountError(ValidationError):
    pass


def referral_coupon_code(referral_code: str) -> str:
    return f"REF{referral_code[-6:].upper()}"


async def register_user(
    db: AsyncSession,
    *,
    email: str,
    password: str,
    name: str,
    role: UserRole = UserRole.customer,
    referral_code: str | None = None,
    clock: Clock = utcnow,
) -> User:
    """
    Create an account.

    With a referral code, in the same atomic unit:
      - the referrer earns REFERRAL_BONUS_POINTS (bonus expiry policy)
      - the new user gets a single-use percentage coupon bound to them
    """
    if role == UserRole.admin:
        raise AccountError("Admin accounts cannot self-register.")

    clean_email = email.strip().lower()
    res = await db.execute(select(User.id).where(func.lower(User.email) == clean_email))
    if res.scalar_one_or_none() is not None:
        raise AccountError("Email already registered.")

    referrer: User | None = None
    if referral_code:
        res = await db.execute(select(User).where(User.referral_code == referral_code.strip().upper()))
        referrer = res.scalar_one_or_none()
        if referrer is None:
            raise AccountError("Invalid referral code.")

    user = User(
        email=clean_email,
        password_hash=hash_password(password),
        name=name.strip(),
        role=role,
        referred_by_id=referrer.id if referrer else None,
    )

    async with atomic(db):
        db.add(user)
        await db.flush()

        if referrer is not None:
            await PointsLedger(db, clock).grant(
                referrer.id,
                settings.REFERRAL_BONUS_POINTS,
                f"Referral bonus for {user.name}",
                kind=PointKind.referral_bonus,
                policy=ExpiryPolicy.BONUS,
            )
            db.add(
                Coupon(
                    code=referral_coupon_code(user.referral_code),
                    kind=CouponKind.REFERRAL_REWARD,
                    discount_type=DiscountType.PERCENTAGE,
                    discount_value=settings.REFERRAL_DISCOUNT_PERCENT,
                    max_uses=1,
                    used_count=0,
                    is_active=True,
                    user_id=user.id,
                    expires_at=clock() + BONUS_POINT_TTL,
                )
            )

    await db.refresh(user)
    logger.info("Registered %s user %s (referred by %s)", role.value, user.id, referrer.id if referrer else "-")
    return user
