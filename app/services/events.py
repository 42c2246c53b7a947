from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, as_utc, utcnow
from app.core.db import atomic
from app.core.errors import NotFound, ValidationError
from app.models.event import Event
from app.models.user import User


async def create_event(
    db: AsyncSession,
    *,
    organizer: User,
    title: str,
    starts_at: datetime,
    price: int,
    capacity: int,
    location: str | None = None,
    description: str | None = None,
    clock: Clock = utcnow,
) -> Event:
    if capacity < 1:
        raise ValidationError("capacity must be >= 1.")
    if price < 0:
        raise ValidationError("price cannot be negative.")
    if as_utc(starts_at) <= clock():
        raise ValidationError("starts_at must be in the future.")

    event = Event(
        organizer_id=organizer.id,
        title=title.strip(),
        description=description,
        location=location,
        starts_at=starts_at,
        price=price,
        capacity=capacity,
        available_seats=capacity,
    )
    async with atomic(db):
        db.add(event)
        await db.flush()
    await db.refresh(event)
    return event


async def get_event(db: AsyncSession, event_id: str) -> Event:
    event = await db.get(Event, event_id, populate_existing=True)
    if event is None:
        raise NotFound("Event not found.")
    return event


async def list_events(
    db: AsyncSession,
    *,
    organizer_id: Optional[str] = None,
    upcoming_only: bool = True,
    limit: int = 50,
    offset: int = 0,
    clock: Clock = utcnow,
) -> Sequence[Event]:
    filters = []
    if organizer_id is not None:
        filters.append(Event.organizer_id == organizer_id)
    if upcoming_only:
        filters.append(Event.starts_at > clock())

    stmt = (
        select(Event)
        .order_by(Event.starts_at.asc())
        .limit(limit)
        .offset(offset)
        .execution_options(populate_existing=True)
    )
    if filters:
        stmt = stmt.where(and_(*filters))

    res = await db.execute(stmt)
    return res.scalars().all()
