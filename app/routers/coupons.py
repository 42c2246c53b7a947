from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import get_current_user, require_organizer
from app.core.errors import TicketingError, to_http_exception
from app.models.user import User
from app.schemas.coupons import (
    CouponCreateRequest,
    CouponResponse,
    CouponValidateRequest,
    CouponValidateResponse,
)
from app.services.coupons import CouponService
from app.services.transactions import price_purchase
from app.services.events import get_event

router = APIRouter(prefix="/coupons", tags=["Coupons"])


@router.post("", response_model=CouponResponse, status_code=201)
async def create_coupon(
    body: CouponCreateRequest,
    db: AsyncSession = Depends(get_db),
    organizer: User = Depends(require_organizer),
):
    try:
        return await CouponService(db).create(
            creator=organizer,
            code=body.code,
            discount_type=body.discount_type,
            discount_value=body.discount_value,
            max_uses=body.max_uses,
            expires_at=body.expires_at,
            event_id=body.event_id,
            user_id=body.user_id,
        )
    except TicketingError as e:
        raise to_http_exception(e)


@router.get("/available", response_model=list[CouponResponse])
async def available_coupons(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await CouponService(db).list_available(current_user.id)


@router.get("/mine", response_model=list[CouponResponse])
async def my_coupons(
    db: AsyncSession = Depends(get_db),
    organizer: User = Depends(require_organizer),
):
    return await CouponService(db).list_by_organizer(organizer.id)


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    body: CouponValidateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    code = body.code.strip().upper()
    try:
        event = await get_event(db, body.event_id)
        check = await CouponService(db).validate(code, current_user.id, event.id)
        if not check.valid:
            return CouponValidateResponse(valid=False, reason=check.reason.value, code=code)

        quote = price_purchase(event, body.quantity, check.coupon, body.points)
    except TicketingError as e:
        raise to_http_exception(e)

    return CouponValidateResponse(
        valid=True,
        code=code,
        subtotal=quote.subtotal,
        discount_amount=quote.discount_amount,
        points_used=quote.points_used,
        total_amount=quote.total_amount,
    )
