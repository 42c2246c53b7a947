from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InsufficientSeats, NotFound, ValidationError
from app.models.event import Event

logger = logging.getLogger(__name__)


class SeatInventory:
    """Available-capacity counter of events. Never leaves [0, capacity]."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def decrement(self, event_id: str, n: int) -> None:
        if n <= 0:
            raise ValidationError("Seat quantity must be positive.")

        res = await self.db.execute(
            update(Event)
            .where(Event.id == event_id, Event.available_seats >= n)
            .values(available_seats=Event.available_seats - n)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return

        exists = await self.db.execute(select(Event.available_seats).where(Event.id == event_id))
        available = exists.scalar_one_or_none()
        if available is None:
            raise NotFound("Event not found.")
        raise InsufficientSeats(f"Only {available} seat(s) left, {n} requested.")

    async def increment(self, event_id: str, n: int) -> int:
        """Give seats back; clamps at capacity. Returns the seats actually restored."""
        if n <= 0:
            raise ValidationError("Seat quantity must be positive.")

        res = await self.db.execute(
            select(Event.available_seats, Event.capacity)
            .where(Event.id == event_id)
            .with_for_update()
        )
        row = res.one_or_none()
        if row is None:
            raise NotFound("Event not found.")

        available, capacity = int(row[0]), int(row[1])
        restored = min(n, capacity - available)
        if restored < n:
            logger.warning(
                "Seat increment overflow on event %s: available=%d capacity=%d requested=%d, clamped to %d",
                event_id, available, capacity, n, restored,
            )
        if restored <= 0:
            return 0

        await self.db.execute(
            update(Event)
            .where(Event.id == event_id)
            .values(available_seats=Event.available_seats + restored)
            .execution_options(synchronize_session=False)
        )
        return restored

    async def available(self, event_id: str) -> int:
        res = await self.db.execute(select(Event.available_seats).where(Event.id == event_id))
        v = res.scalar_one_or_none()
        if v is None:
            raise NotFound("Event not found.")
        return int(v)
