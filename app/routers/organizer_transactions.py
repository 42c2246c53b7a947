from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import require_organizer
from app.core.errors import TicketingError, to_http_exception
from app.models.transaction import TransactionStatus
from app.models.user import User
from app.schemas.transactions import TransactionDecisionIn, TransactionOut, TransactionsListOut
from app.services.transactions import TransactionService

router = APIRouter(prefix="/organizer/transactions", tags=["Organizer - Transactions"])


@router.get("", response_model=TransactionsListOut)
async def list_event_transactions(
    status: TransactionStatus | None = Query(default=None),
    event_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    organizer: User = Depends(require_organizer),
):
    try:
        items = await TransactionService(db).list_for_organizer(
            organizer, status=status, event_id=event_id, limit=limit, offset=offset
        )
    except TicketingError as e:
        raise to_http_exception(e)
    return TransactionsListOut(
        items=[TransactionOut.model_validate(t) for t in items],
        limit=limit,
        offset=offset,
    )


@router.patch("/{transaction_id}", response_model=TransactionOut)
async def decide_transaction(
    transaction_id: str,
    body: TransactionDecisionIn,
    db: AsyncSession = Depends(get_db),
    organizer: User = Depends(require_organizer),
):
    try:
        return await TransactionService(db).set_status(transaction_id, organizer, body.status)
    except TicketingError as e:
        raise to_http_exception(e)
