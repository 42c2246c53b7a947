from __future__ import annotations

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.db import get_db, get_session_factory
from app.core.deps import get_current_user, require_cron_key
from app.core.errors import TicketingError, to_http_exception
from app.models.transaction import TransactionStatus
from app.models.user import User
from app.schemas.transactions import (
    SweepOut,
    TransactionCreateIn,
    TransactionEventOut,
    TransactionOut,
    TransactionsListOut,
)
from app.services.reconciliation import ReconciliationSweeper
from app.services.transactions import TransactionService

router = APIRouter(prefix="/transactions", tags=["Transactions"])


@router.post("", response_model=TransactionOut, status_code=201)
async def create_transaction(
    payload: TransactionCreateIn,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return await TransactionService(db).create(
            buyer=current_user,
            event_id=payload.event_id,
            quantity=payload.quantity,
            points=payload.points,
            coupon_code=payload.coupon_code,
        )
    except TicketingError as e:
        raise to_http_exception(e)


@router.get("", response_model=TransactionsListOut)
async def list_my_transactions(
    status: TransactionStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        items = await TransactionService(db).list_for_user(
            current_user.id, status=status, limit=limit, offset=offset
        )
    except TicketingError as e:
        raise to_http_exception(e)
    return TransactionsListOut(
        items=[TransactionOut.model_validate(t) for t in items],
        limit=limit,
        offset=offset,
    )


@router.post("/cleanup", response_model=SweepOut, dependencies=[Depends(require_cron_key)])
async def cleanup_transactions(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    report = await ReconciliationSweeper(session_factory).run()
    return SweepOut(**report.to_dict())


@router.get("/{transaction_id}", response_model=TransactionOut)
async def get_transaction(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return await TransactionService(db).get(transaction_id, current_user)
    except TicketingError as e:
        raise to_http_exception(e)


@router.get("/{transaction_id}/timeline", response_model=list[TransactionEventOut])
async def transaction_timeline(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return await TransactionService(db).timeline(transaction_id, current_user)
    except TicketingError as e:
        raise to_http_exception(e)


@router.post("/{transaction_id}/payment-proof", response_model=TransactionOut)
async def upload_payment_proof(
    transaction_id: str,
    payment_proof: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    data = await payment_proof.read()
    try:
        return await TransactionService(db).submit_payment_proof(
            transaction_id,
            current_user,
            content_type=payment_proof.content_type,
            data=data,
        )
    except TicketingError as e:
        raise to_http_exception(e)
