# app/services/coupons.py
from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, as_utc, utcnow
from app.core.db import atomic
from app.core.errors import Forbidden, NotFound, StorageFailure, ValidationError
from app.models.coupon import Coupon, CouponKind, DiscountType
from app.models.event import Event
from app.models.user import User, UserRole

logger = logging.getLogger(__name__)


class CouponRejection(str, enum.Enum):
    NOT_FOUND = "NotFound"
    INACTIVE = "Inactive"
    EXPIRED = "Expired"
    USAGE_LIMIT_REACHED = "UsageLimitReached"
    EVENT_SCOPE_MISMATCH = "EventScopeMismatch"
    USER_SCOPE_MISMATCH = "UserScopeMismatch"


@dataclass(frozen=True)
class CouponCheck:
    valid: bool
    coupon: Coupon | None = None
    reason: CouponRejection | None = None


def calculate_discount(total_amount: int, discount_type: DiscountType | str, value: int) -> int:
    """
    Discount for a payable total, in whole currency units.

    Percentages are floored; a fixed amount never exceeds the total.
    Unknown types give no discount.
    """
    if discount_type == DiscountType.PERCENTAGE:
        return int(total_amount * value // 100)
    if discount_type == DiscountType.FIXED_AMOUNT:
        return min(value, total_amount)
    return 0


def generate_coupon_code(prefix: str = "EVT") -> str:
    return f"{prefix}-{secrets.token_hex(4).upper()}"


class CouponService:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def validate(
        self,
        code: str,
        user_id: str | None = None,
        event_id: str | None = None,
    ) -> CouponCheck:
        res = await self.db.execute(
            select(Coupon)
            .where(Coupon.code == code.strip().upper())
            .execution_options(populate_existing=True)
        )
        coupon = res.scalar_one_or_none()

        if coupon is None:
            return CouponCheck(valid=False, reason=CouponRejection.NOT_FOUND)
        if not coupon.is_active:
            return CouponCheck(valid=False, coupon=coupon, reason=CouponRejection.INACTIVE)
        if coupon.expires_at is not None and as_utc(coupon.expires_at) < self.clock():
            return CouponCheck(valid=False, coupon=coupon, reason=CouponRejection.EXPIRED)
        if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
            return CouponCheck(valid=False, coupon=coupon, reason=CouponRejection.USAGE_LIMIT_REACHED)
        if coupon.event_id is not None and coupon.event_id != event_id:
            return CouponCheck(valid=False, coupon=coupon, reason=CouponRejection.EVENT_SCOPE_MISMATCH)
        if coupon.user_id is not None and coupon.user_id != user_id:
            return CouponCheck(valid=False, coupon=coupon, reason=CouponRejection.USER_SCOPE_MISMATCH)

        return CouponCheck(valid=True, coupon=coupon)

    async def mark_used(self, coupon_id: str) -> bool:
        async with atomic(self.db):
            res = await self.db.execute(
                update(Coupon)
                .where(
                    Coupon.id == coupon_id,
                    or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
                )
                .values(used_count=Coupon.used_count + 1)
                .execution_options(synchronize_session=False)
            )
        return res.rowcount == 1

    async def mark_unused(self, coupon_id: str) -> None:
        async with atomic(self.db):
            res = await self.db.execute(
                update(Coupon)
                .where(Coupon.id == coupon_id, Coupon.used_count > 0)
                .values(used_count=Coupon.used_count - 1)
                .execution_options(synchronize_session=False)
            )
        if res.rowcount != 1:
            logger.warning("Coupon %s released with used_count already at 0", coupon_id)

    async def create(
        self,
        *,
        creator: User,
        code: str | None,
        discount_type: DiscountType,
        discount_value: int,
        max_uses: int | None = None,
        expires_at: datetime | None = None,
        event_id: str | None = None,
        user_id: str | None = None,
        kind: CouponKind | None = None,
    ) -> Coupon:
        if discount_value <= 0:
            raise ValidationError("discount_value must be positive.")
        if discount_type == DiscountType.PERCENTAGE and discount_value > 100:
            raise ValidationError("Percentage discount cannot exceed 100.")
        if max_uses is not None and max_uses < 1:
            raise ValidationError("max_uses must be at least 1.")
        if expires_at is not None and as_utc(expires_at) <= self.clock():
            raise ValidationError("expires_at must be in the future.")

        if event_id is not None:
            event = await self.db.get(Event, event_id)
            if event is None:
                raise NotFound("Event not found.")
            if creator.role != UserRole.admin and event.organizer_id != creator.id:
                raise Forbidden("You can only create coupons for your own events.")

        if kind is None:
            if creator.role == UserRole.admin and event_id is None:
                kind = CouponKind.SYSTEM_PROMOTION
            else:
                kind = CouponKind.ORGANIZER_VOUCHER
        if kind == CouponKind.SYSTEM_PROMOTION and creator.role != UserRole.admin:
            raise Forbidden("Only admins can create system promotions.")

        coupon = Coupon(
            code=(code or generate_coupon_code()).strip().upper(),
            kind=kind,
            discount_type=discount_type,
            discount_value=discount_value,
            max_uses=max_uses,
            used_count=0,
            is_active=True,
            event_id=event_id,
            user_id=user_id,
            organizer_id=creator.id,
            expires_at=expires_at,
        )

        taken = await self.db.execute(select(Coupon.id).where(Coupon.code == coupon.code))
        if taken.scalar_one_or_none() is not None:
            raise ValidationError(f"Coupon code {coupon.code} already exists.")

        try:
            async with atomic(self.db):
                self.db.add(coupon)
                await self.db.flush()
        except StorageFailure as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ValidationError(f"Coupon code {coupon.code} already exists.") from e
            raise

        await self.db.refresh(coupon)
        logger.info("Coupon %s (%s) created by %s", coupon.code, kind.value, creator.id)
        return coupon

    async def list_available(self, user_id: str) -> Sequence[Coupon]:
        now = self.clock()
        res = await self.db.execute(
            select(Coupon)
            .where(
                or_(Coupon.user_id == user_id, Coupon.kind == CouponKind.SYSTEM_PROMOTION),
                Coupon.is_active.is_(True),
                or_(Coupon.expires_at.is_(None), Coupon.expires_at >= now),
                or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
            )
            .order_by(Coupon.expires_at.asc(), Coupon.created_at.desc())
        )
        return res.scalars().all()

    async def list_by_organizer(self, organizer_id: str) -> Sequence[Coupon]:
        res = await self.db.execute(
            select(Coupon)
            .where(Coupon.organizer_id == organizer_id)
            .order_by(Coupon.created_at.desc())
            .limit(500)
        )
        return res.scalars().all()
