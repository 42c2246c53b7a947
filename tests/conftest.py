"""Pytest fixtures: a file-backed SQLite database per test, a controllable clock and an API client."""
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401
from app.core.clock import utcnow
from app.core.config import settings
from app.core.db import Base, get_db, get_session_factory
from app.core.security import create_access_token, hash_password
from app.main import app as fastapi_app
from app.models.event import Event
from app.models.user import User, UserRole
from app.services.points import PointsLedger
from app.services.proof_storage import LocalProofStorage

PASSWORD = "secret123"
_PASSWORD_HASH = hash_password(PASSWORD)


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(utcnow().replace(microsecond=0))


@pytest.fixture
def storage(tmp_path):
    return LocalProofStorage(tmp_path / "uploads")


@pytest.fixture
async def client(session_factory, tmp_path, monkeypatch):
    """AsyncClient over the ASGI app with the database dependencies pointed at the test engine."""
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test") as c:
        yield c
    fastapi_app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
async def create_test_user(
    db: AsyncSession,
    email: str = "buyer@example.com",
    role: UserRole = UserRole.customer,
    name: str = "Test User",
) -> User:
    user = User(email=email, password_hash=_PASSWORD_HASH, name=name, role=role)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def create_test_event(
    db: AsyncSession,
    organizer: User,
    clock,
    *,
    price: int = 100_000,
    capacity: int = 10,
    title: str = "Jazz Night",
    starts_in: timedelta = timedelta(days=30),
) -> Event:
    event = Event(
        organizer_id=organizer.id,
        title=title,
        starts_at=clock() + starts_in,
        price=price,
        capacity=capacity,
        available_seats=capacity,
    )
    db.add(event)
    await db.commit()
    await db.refresh(event)
    return event


async def give_points(db: AsyncSession, user: User, amount: int, clock) -> None:
    await PointsLedger(db, clock).grant(user.id, amount, "Test grant")


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id=user.id, role=user.role.value)}"}
