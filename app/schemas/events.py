from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventCreateIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    location: Optional[str] = Field(default=None, max_length=255)
    starts_at: datetime
    price: int = Field(..., ge=0)
    capacity: int = Field(..., ge=1, le=100_000)


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organizer_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    starts_at: datetime
    price: int
    capacity: int
    available_seats: int
    created_at: datetime


class EventsListOut(BaseModel):
    items: List[EventOut] = Field(default_factory=list)
    limit: int
    offset: int
