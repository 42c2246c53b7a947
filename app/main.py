import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import app.models  # noqa: F401

from app.core.config import settings
from app.core.db import Base, engine
from app.services.proof_storage import PUBLIC_PREFIX

# Routers
from app.routers.auth import router as auth_router
from app.routers.me import router as me_router
from app.routers.events import router as events_router
from app.routers.coupons import router as coupons_router
from app.routers.transactions import router as transactions_router
from app.routers.organizer_transactions import router as organizer_transactions_router
from app.routers.points import router as points_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.CREATE_TABLES_ON_STARTUP:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")
    yield
    await engine.dispose()


app = FastAPI(title="Ticketing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Payment proof files
app.mount(
    PUBLIC_PREFIX,
    StaticFiles(directory=f"{settings.UPLOAD_DIR}/payment-proofs", check_dir=False),
    name="payment-proofs",
)

# Auth & users
app.include_router(auth_router)
app.include_router(me_router)

# Catalogue
app.include_router(events_router)
app.include_router(coupons_router)

# Transactions
app.include_router(transactions_router)
app.include_router(organizer_transactions_router)

# Loyalty
app.include_router(points_router)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok"}
