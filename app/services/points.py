"""
Loyalty points ledger.

Every movement is an immutable PointRecord. The spendable balance is the
sum of unexpired records. users.points_balance is a cached running total,
updated with each insert in the same atomic unit; it is the row consume locks
and it still counts expired batches until expire_sweep offsets them.

- grant:   positive batch with an expiry chosen by policy
- consume: FIFO by expiry (soonest-expiring batch first), one negative row
           per batch touched
- expire_sweep: offsets what is left of expired batches, one unit per batch
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, utcnow
from app.core.db import atomic
from app.core.errors import InvalidAmount, NotFound, TicketingError
from app.models.point import PointKind, PointRecord
from app.models.user import User

logger = logging.getLogger(__name__)


# Purchase rewards and refund grants
STANDARD_POINT_TTL = timedelta(days=365)
# Referral and cashback bonuses
BONUS_POINT_TTL = timedelta(days=90)


class ExpiryPolicy(str, enum.Enum):
    STANDARD = "standard"
    BONUS = "bonus"

    @property
    def ttl(self) -> timedelta:
        return STANDARD_POINT_TTL if self is ExpiryPolicy.STANDARD else BONUS_POINT_TTL


_DEFAULT_POLICY = {
    PointKind.purchase_reward: ExpiryPolicy.STANDARD,
    PointKind.refund: ExpiryPolicy.STANDARD,
    PointKind.referral_bonus: ExpiryPolicy.BONUS,
    PointKind.cashback: ExpiryPolicy.BONUS,
}


class PointsLedger:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    # -------------------------
    # Reads
    # -------------------------
    async def get_balance(self, user_id: str) -> int:
        """Spendable points: the sum of all records that have not expired yet."""
        await self.cached_balance(user_id)
        res = await self.db.execute(
            select(func.coalesce(func.sum(PointRecord.amount), 0)).where(
                PointRecord.user_id == user_id,
                PointRecord.expires_at > self.clock(),
            )
        )
        return int(res.scalar_one())

    async def cached_balance(self, user_id: str) -> int:
        res = await self.db.execute(select(User.points_balance).where(User.id == user_id))
        v = res.scalar_one_or_none()
        if v is None:
            raise NotFound("User not found.")
        return int(v)

    async def get_history(self, user_id: str, *, limit: int = 50, offset: int = 0) -> Sequence[PointRecord]:
        res = await self.db.execute(
            select(PointRecord)
            .where(PointRecord.user_id == user_id)
            .order_by(PointRecord.created_at.desc(), PointRecord.id)
            .limit(limit)
            .offset(offset)
        )
        return res.scalars().all()

    async def _open_batches(self, user_id: str, *, now: datetime, expired: bool = False) -> list[tuple[PointRecord, int]]:
        """Positive batches with their remaining amount, soonest expiry first."""
        drawn = (
            select(
                PointRecord.source_record_id.label("source_id"),
                func.sum(PointRecord.amount).label("drawn"),
            )
            .where(PointRecord.user_id == user_id, PointRecord.source_record_id.is_not(None))
            .group_by(PointRecord.source_record_id)
            .subquery()
        )

        expiry_clause = PointRecord.expires_at <= now if expired else PointRecord.expires_at > now

        res = await self.db.execute(
            select(PointRecord, func.coalesce(drawn.c.drawn, 0))
            .outerjoin(drawn, drawn.c.source_id == PointRecord.id)
            .where(
                PointRecord.user_id == user_id,
                PointRecord.amount > 0,
                expiry_clause,
            )
            .order_by(PointRecord.expires_at.asc(), PointRecord.created_at.asc(), PointRecord.id)
        )

        out: list[tuple[PointRecord, int]] = []
        for record, drawn_amount in res.all():
            remaining = int(record.amount) + int(drawn_amount)
            if remaining > 0:
                out.append((record, remaining))
        return out

    async def _lock_user_balance(self, user_id: str) -> int:
        res = await self.db.execute(
            select(User.points_balance).where(User.id == user_id).with_for_update()
        )
        v = res.scalar_one_or_none()
        if v is None:
            raise NotFound("User not found.")
        return int(v)

    # -------------------------
    # Writes
    # -------------------------
    async def grant(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_event_id: str | None = None,
        *,
        kind: PointKind = PointKind.purchase_reward,
        policy: ExpiryPolicy | None = None,
        related_transaction_id: str | None = None,
    ) -> PointRecord:
        if amount <= 0:
            raise InvalidAmount("Point grant must be positive.")
        if kind not in _DEFAULT_POLICY:
            raise InvalidAmount(f"{kind.value} is not a grant kind.")

        policy = policy or _DEFAULT_POLICY[kind]
        now = self.clock()

        async with atomic(self.db):
            res = await self.db.execute(
                update(User)
                .where(User.id == user_id)
                .values(points_balance=User.points_balance + amount)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise NotFound("User not found.")

            record = PointRecord(
                user_id=user_id,
                kind=kind,
                amount=amount,
                expires_at=now + policy.ttl,
                description=description,
                related_event_id=related_event_id,
                related_transaction_id=related_transaction_id,
                created_at=now,
            )
            self.db.add(record)
            await self.db.flush()

        logger.info("Granted %d points (%s) to user %s", amount, kind.value, user_id)
        return record

    async def consume(
        self,
        user_id: str,
        amount: int,
        *,
        description: str = "Points used for purchase",
        related_transaction_id: str | None = None,
    ) -> bool:
        if amount <= 0:
            raise InvalidAmount("Point consumption must be positive.")

        now = self.clock()

        async with atomic(self.db):
            balance = await self._lock_user_balance(user_id)
            # the cached total never undercounts what is spendable
            if balance < amount:
                return False

            plan: list[tuple[PointRecord, int]] = []
            needed = amount
            for batch, remaining in await self._open_batches(user_id, now=now):
                if needed <= 0:
                    break
                take = min(remaining, needed)
                plan.append((batch, take))
                needed -= take

            if needed > 0:
                logger.info(
                    "User %s cannot spend %d points: %d short once expired batches are left out",
                    user_id, amount, needed,
                )
                return False

            for batch, take in plan:
                self.db.add(
                    PointRecord(
                        user_id=user_id,
                        kind=PointKind.consumption,
                        amount=-take,
                        expires_at=batch.expires_at,
                        description=description,
                        source_record_id=batch.id,
                        related_transaction_id=related_transaction_id,
                        created_at=now,
                    )
                )

            await self.db.execute(
                update(User)
                .where(User.id == user_id)
                .values(points_balance=User.points_balance - amount)
                .execution_options(synchronize_session=False)
            )
            await self.db.flush()

        logger.info("Consumed %d points from user %s across %d batch(es)", amount, user_id, len(plan))
        return True

    async def expire_sweep(self) -> int:
        """
        Offset the remainder of every expired batch.

        Must run outside any enclosing atomic unit: each batch commits on its
        own so one bad row does not hold back the rest.
        """
        now = self.clock()

        res = await self.db.execute(
            select(PointRecord.user_id)
            .where(PointRecord.amount > 0, PointRecord.expires_at <= now)
            .distinct()
        )
        user_ids = [str(u) for u in res.scalars().all()]

        offset = 0
        for user_id in user_ids:
            batches = await self._open_batches(user_id, now=now, expired=True)
            batch_ids = [(b.id, b.expires_at) for b, _ in batches]

            for batch_id, expires_at in batch_ids:
                try:
                    if await self._expire_batch(user_id, batch_id, expires_at, now=now):
                        offset += 1
                except TicketingError:
                    logger.exception("Failed to expire point batch %s of user %s", batch_id, user_id)

        if offset:
            logger.info("Expired %d point batch(es)", offset)
        return offset

    async def _expire_batch(self, user_id: str, batch_id: str, expires_at: datetime, *, now: datetime) -> bool:
        async with atomic(self.db):
            balance = await self._lock_user_balance(user_id)

            res = await self.db.execute(
                select(func.coalesce(func.sum(PointRecord.amount), 0)).where(
                    (PointRecord.id == batch_id) | (PointRecord.source_record_id == batch_id)
                )
            )
            remaining = int(res.scalar_one())
            if remaining <= 0:
                return False

            debit = min(remaining, balance)
            if debit < remaining:
                logger.warning(
                    "User %s balance %d below expiring remainder %d of batch %s",
                    user_id, balance, remaining, batch_id,
                )

            self.db.add(
                PointRecord(
                    user_id=user_id,
                    kind=PointKind.expiry,
                    amount=-remaining,
                    expires_at=expires_at,
                    description="Points expired",
                    source_record_id=batch_id,
                    created_at=now,
                )
            )
            if debit > 0:
                await self.db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(points_balance=User.points_balance - debit)
                    .execution_options(synchronize_session=False)
                )
        return True
