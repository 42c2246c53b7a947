from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings
from app.core.errors import StorageFailure


class Base(DeclarativeBase):
    pass


engine = create_async_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO, pool_pre_ping=True)

SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return SessionLocal


_DEPTH_KEY = "atomic_depth"


@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Scoped atomic unit on a session.

    Commits on normal exit and rolls back on any exception. A nested
    ``atomic`` on the same session joins the outer unit, so building blocks
    (points, coupons, seats) can be composed into one commit.

    Database errors are re-raised as StorageFailure after rollback.
    """
    depth = db.info.get(_DEPTH_KEY, 0)
    db.info[_DEPTH_KEY] = depth + 1

    if depth:
        try:
            yield db
        finally:
            db.info[_DEPTH_KEY] = depth
        return

    try:
        yield db
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise StorageFailure("Storage transaction aborted.") from e
    except BaseException:
        await db.rollback()
        raise
    finally:
        db.info[_DEPTH_KEY] = 0
