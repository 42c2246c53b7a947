from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.deps import require_organizer
from app.core.errors import TicketingError, to_http_exception
from app.models.user import User
from app.schemas.events import EventCreateIn, EventOut, EventsListOut
from app.services.events import create_event, get_event, list_events

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("", response_model=EventOut, status_code=201)
async def create(
    payload: EventCreateIn,
    db: AsyncSession = Depends(get_db),
    organizer: User = Depends(require_organizer),
):
    try:
        return await create_event(
            db,
            organizer=organizer,
            title=payload.title,
            starts_at=payload.starts_at,
            price=payload.price,
            capacity=payload.capacity,
            location=payload.location,
            description=payload.description,
        )
    except TicketingError as e:
        raise to_http_exception(e)


@router.get("", response_model=EventsListOut)
async def list_all(
    organizer_id: str | None = Query(default=None),
    upcoming_only: bool = Query(default=True),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    items = await list_events(
        db,
        organizer_id=organizer_id,
        upcoming_only=upcoming_only,
        limit=limit,
        offset=offset,
    )
    return EventsListOut(items=[EventOut.model_validate(e) for e in items], limit=limit, offset=offset)


@router.get("/{event_id}", response_model=EventOut)
async def get_one(
    event_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_event(db, event_id)
    except TicketingError as e:
        raise to_http_exception(e)
