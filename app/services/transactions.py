"""
Ticket purchase lifecycle.

    WAITING_PAYMENT ──proof──> WAITING_CONFIRMATION ──confirm──> CONFIRMED
          │                          ├──reject──> REJECTED
          └──deadline──> EXPIRED     └──timeout──> CANCELLED

Creation debits seats, points and a coupon use in one atomic unit. EXPIRED,
REJECTED and CANCELLED hand all three back; CONFIRMED grants the purchase
reward. Every transition is a conditional update on the expected status, so
a second trigger racing the first becomes a TransitionConflict instead of a
second refund.
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, as_utc, utcnow
from app.core.config import settings
from app.core.db import atomic
from app.core.errors import (
    CouponRejected,
    CouponUsageExhausted,
    InsufficientPoints,
    InvalidTransition,
    NotFound,
    PaymentDeadlinePassed,
    TransitionConflict,
    ValidationError,
)
from app.models.coupon import Coupon
from app.models.event import Event
from app.models.point import PointKind
from app.models.transaction import (
    REFUND_STATUSES,
    Transaction,
    TransactionStatus,
    can_transition,
)
from app.models.transaction_event import TransactionEvent
from app.models.user import User, UserRole
from app.services.coupons import CouponService, calculate_discount
from app.services.inventory import SeatInventory
from app.services.notifications import LogNotifier, Notifier
from app.services.points import PointsLedger
from app.services.proof_storage import ProofStorage, get_proof_storage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Quote:
    unit_price: int
    quantity: int
    subtotal: int
    discount_amount: int
    points_used: int
    total_amount: int
    coupon: Coupon | None = None


def price_purchase(event: Event, quantity: int, coupon: Coupon | None = None, points: int = 0) -> Quote:
    if quantity < 1:
        raise ValidationError("quantity must be >= 1.")
    if points < 0:
        raise ValidationError("points cannot be negative.")

    subtotal = int(event.price) * quantity
    discount = 0
    if coupon is not None:
        discount = calculate_discount(subtotal, coupon.discount_type, int(coupon.discount_value))

    payable = subtotal - discount
    if points > payable:
        raise ValidationError(f"Cannot use {points} points on a payable amount of {payable}.")

    return Quote(
        unit_price=int(event.price),
        quantity=quantity,
        subtotal=subtotal,
        discount_amount=discount,
        points_used=points,
        total_amount=payable - points,
        coupon=coupon,
    )


class TransactionService:
    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        *,
        notifier: Notifier | None = None,
        storage: ProofStorage | None = None,
        payment_window: timedelta | None = None,
        confirmation_timeout: timedelta | None = None,
        reward_rate: float | None = None,
    ):
        self.db = db
        self.clock = clock
        self.seats = SeatInventory(db)
        self.points = PointsLedger(db, clock)
        self.coupons = CouponService(db, clock)
        self.notifier = notifier or LogNotifier()
        self.storage = storage or get_proof_storage()
        self.payment_window = payment_window or timedelta(minutes=settings.PAYMENT_WINDOW_MINUTES)
        self.confirmation_timeout = confirmation_timeout or timedelta(days=settings.CONFIRMATION_TIMEOUT_DAYS)
        self.reward_rate = settings.PURCHASE_REWARD_RATE if reward_rate is None else reward_rate

    # -------------------------
    # Loading / access
    # -------------------------
    async def load(self, transaction_id: str) -> Transaction:
        res = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        txn = res.scalar_one_or_none()
        if txn is None:
            raise NotFound("Transaction not found.")
        return txn

    async def _event_organizer(self, event_id: str) -> str | None:
        res = await self.db.execute(select(Event.organizer_id).where(Event.id == event_id))
        return res.scalar_one_or_none()

    async def _ensure_visible(self, txn: Transaction, principal: User) -> None:
        if principal.role == UserRole.admin or txn.user_id == principal.id:
            return
        if principal.role == UserRole.organizer and await self._event_organizer(txn.event_id) == principal.id:
            return
        raise NotFound("Transaction not found.")

    # -------------------------
    # State machine core
    # -------------------------
    async def _transition(
        self,
        txn: Transaction,
        target: TransactionStatus,
        *,
        actor_id: str | None,
        meta: dict[str, Any] | None = None,
        values: dict[str, Any] | None = None,
    ) -> None:
        expected = txn.status
        if not can_transition(expected, target):
            raise InvalidTransition(f"Cannot move transaction from {expected.value} to {target.value}.")

        now = self.clock()
        extra = dict(values or {})
        if target.is_terminal:
            extra.setdefault("decided_at", now)

        res = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == txn.id, Transaction.status == expected)
            .values(status=target, updated_at=now, **extra)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise TransitionConflict(f"Transaction {txn.id} is no longer {expected.value}.")

        self.db.add(
            TransactionEvent(
                transaction_id=txn.id,
                from_status=expected.value,
                to_status=target.value,
                actor_user_id=actor_id,
                meta=meta or {},
                created_at=now,
            )
        )

    async def _refund(self, txn: Transaction, target: TransactionStatus) -> None:
        await self.seats.increment(txn.event_id, txn.quantity)

        if txn.points_used > 0:
            await self.points.grant(
                txn.user_id,
                txn.points_used,
                f"Points refunded - Transaction {txn.id} {target.value.lower()}",
                txn.event_id,
                kind=PointKind.refund,
                related_transaction_id=txn.id,
            )

        if txn.coupon_id:
            await self.coupons.mark_unused(txn.coupon_id)

    async def _reward(self, txn: Transaction) -> None:
        reward = math.floor(txn.total_amount * self.reward_rate)
        if reward <= 0:
            return

        res = await self.db.execute(select(Event.title).where(Event.id == txn.event_id))
        title = res.scalar_one_or_none() or txn.event_id
        await self.points.grant(
            txn.user_id,
            reward,
            f"Purchase reward for event {title}",
            txn.event_id,
            kind=PointKind.purchase_reward,
            related_transaction_id=txn.id,
        )

    async def _apply(
        self,
        txn: Transaction,
        target: TransactionStatus,
        *,
        actor_id: str | None = None,
        meta: dict[str, Any] | None = None,
        values: dict[str, Any] | None = None,
    ) -> Transaction:
        previous = txn.status

        async with atomic(self.db):
            await self._transition(txn, target, actor_id=actor_id, meta=meta, values=values)
            if target in REFUND_STATUSES:
                await self._refund(txn, target)
            elif target == TransactionStatus.CONFIRMED:
                await self._reward(txn)

        txn = await self.load(txn.id)
        logger.info("Transaction %s: %s -> %s", txn.id, previous.value, target.value)
        await self.notifier.transaction_status_changed(txn, previous)
        return txn

    # -------------------------
    # Deadline-driven transitions
    # -------------------------
    def is_payment_overdue(self, txn: Transaction) -> bool:
        return (
            txn.status == TransactionStatus.WAITING_PAYMENT
            and as_utc(txn.payment_deadline) < self.clock()
        )

    def is_confirmation_overdue(self, txn: Transaction) -> bool:
        return (
            txn.status == TransactionStatus.WAITING_CONFIRMATION
            and as_utc(txn.updated_at) < self.clock() - self.confirmation_timeout
        )

    async def expire(self, txn: Transaction, *, source: str = "read") -> Transaction:
        """WAITING_PAYMENT -> EXPIRED. Raises TransitionConflict when another trigger won."""
        return await self._apply(txn, TransactionStatus.EXPIRED, meta={"source": source})

    async def cancel_unconfirmed(self, txn: Transaction, *, source: str = "sweeper") -> Transaction:
        """WAITING_CONFIRMATION -> CANCELLED after the organizer never decided."""
        return await self._apply(txn, TransactionStatus.CANCELLED, meta={"source": source})

    async def _expire_if_overdue(self, txn: Transaction) -> Transaction:
        if not self.is_payment_overdue(txn):
            return txn
        # a rollback expires every instance in the session, txn included
        txn_id = txn.id
        try:
            return await self.expire(txn)
        except TransitionConflict:
            logger.warning("Read-path expiry of %s lost the race; returning current state", txn_id)
            return await self.load(txn_id)

    async def _settle_page(
        self, rows: Sequence[Transaction], status: TransactionStatus | None
    ) -> list[Transaction]:
        """Expire the overdue rows of one page; bulk expiry is the sweeper's job."""
        ids = [t.id for t in rows]
        overdue = [t.id for t in rows if self.is_payment_overdue(t)]
        if not overdue:
            return list(rows)

        for txn_id in overdue:
            await self._expire_if_overdue(await self.load(txn_id))

        res = await self.db.execute(
            select(Transaction)
            .where(Transaction.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        by_id = {t.id: t for t in res.scalars().all()}
        page = [by_id[i] for i in ids]
        if status is not None:
            page = [t for t in page if t.status == status]
        return page

    # -------------------------
    # Public operations
    # -------------------------
    async def quote(
        self,
        *,
        buyer: User,
        event_id: str,
        quantity: int,
        points: int = 0,
        coupon_code: str | None = None,
    ) -> Quote:
        event = await self.db.get(Event, event_id, populate_existing=True)
        if event is None:
            raise NotFound("Event not found.")

        coupon = None
        if coupon_code:
            check = await self.coupons.validate(coupon_code, buyer.id, event.id)
            if not check.valid:
                raise CouponRejected(check.reason.value)
            coupon = check.coupon

        return price_purchase(event, quantity, coupon, points)

    async def create(
        self,
        *,
        buyer: User,
        event_id: str,
        quantity: int,
        points: int = 0,
        coupon_code: str | None = None,
    ) -> Transaction:
        quote = await self.quote(
            buyer=buyer,
            event_id=event_id,
            quantity=quantity,
            points=points,
            coupon_code=coupon_code,
        )

        res = await self.db.execute(select(Event.starts_at).where(Event.id == event_id))
        starts_at = res.scalar_one()
        now = self.clock()
        if as_utc(starts_at) <= now:
            raise ValidationError("Event has already started.")

        txn = Transaction(
            id=str(uuid.uuid4()),
            user_id=buyer.id,
            event_id=event_id,
            coupon_id=quote.coupon.id if quote.coupon else None,
            quantity=quote.quantity,
            unit_price=quote.unit_price,
            subtotal=quote.subtotal,
            discount_amount=quote.discount_amount,
            points_used=quote.points_used,
            total_amount=quote.total_amount,
            status=TransactionStatus.WAITING_PAYMENT,
            payment_deadline=now + self.payment_window,
            created_at=now,
            updated_at=now,
        )

        async with atomic(self.db):
            await self.seats.decrement(event_id, quote.quantity)

            self.db.add(txn)
            await self.db.flush()

            if quote.points_used > 0:
                ok = await self.points.consume(
                    buyer.id,
                    quote.points_used,
                    description=f"Points used for transaction {txn.id}",
                    related_transaction_id=txn.id,
                )
                if not ok:
                    raise InsufficientPoints(f"Not enough points to use {quote.points_used}.")

            if quote.coupon is not None:
                if not await self.coupons.mark_used(quote.coupon.id):
                    raise CouponUsageExhausted(f"Coupon {quote.coupon.code} has no uses left.")

            self.db.add(
                TransactionEvent(
                    transaction_id=txn.id,
                    from_status=None,
                    to_status=TransactionStatus.WAITING_PAYMENT.value,
                    actor_user_id=buyer.id,
                    meta={
                        "quantity": quote.quantity,
                        "points_used": quote.points_used,
                        "coupon_id": txn.coupon_id,
                        "total_amount": quote.total_amount,
                    },
                    created_at=now,
                )
            )

        logger.info(
            "Transaction %s created: user=%s event=%s qty=%d total=%d",
            txn.id, buyer.id, event_id, quote.quantity, quote.total_amount,
        )
        txn = await self.load(txn.id)
        await self.notifier.transaction_status_changed(txn, None)
        return txn

    async def get(self, transaction_id: str, principal: User) -> Transaction:
        txn = await self.load(transaction_id)
        await self._ensure_visible(txn, principal)
        return await self._expire_if_overdue(txn)

    async def list_for_user(
        self,
        user_id: str,
        *,
        status: TransactionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        res = await self.db.execute(stmt)
        return await self._settle_page(res.scalars().all(), status)

    async def list_for_organizer(
        self,
        organizer: User,
        *,
        status: TransactionStatus | None = None,
        event_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        scope = []
        if organizer.role != UserRole.admin:
            scope.append(Transaction.event_id.in_(select(Event.id).where(Event.organizer_id == organizer.id)))
        if event_id is not None:
            scope.append(Transaction.event_id == event_id)

        stmt = (
            select(Transaction)
            .where(*scope)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        res = await self.db.execute(stmt)
        return await self._settle_page(res.scalars().all(), status)

    async def submit_payment_proof(
        self,
        transaction_id: str,
        user: User,
        *,
        content_type: str | None,
        data: bytes,
    ) -> Transaction:
        self.storage.check(content_type, len(data))

        txn = await self.load(transaction_id)
        if txn.user_id != user.id:
            raise NotFound("Transaction not found.")

        if self.is_payment_overdue(txn):
            await self._expire_if_overdue(txn)
            raise PaymentDeadlinePassed("Payment deadline has expired.")
        if txn.status != TransactionStatus.WAITING_PAYMENT:
            raise InvalidTransition(f"Transaction is {txn.status.value}, not waiting for payment.")

        reference = await self.storage.save(txn.id, content_type, data)
        try:
            return await self._apply(
                txn,
                TransactionStatus.WAITING_CONFIRMATION,
                actor_id=user.id,
                meta={"payment_proof": reference},
                values={"payment_proof": reference},
            )
        except TransitionConflict as e:
            await self.storage.discard(reference)
            raise InvalidTransition("Transaction is no longer waiting for payment.") from e
        except Exception:
            await self.storage.discard(reference)
            raise

    async def set_status(
        self,
        transaction_id: str,
        organizer: User,
        status: TransactionStatus,
    ) -> Transaction:
        if status not in (TransactionStatus.CONFIRMED, TransactionStatus.REJECTED):
            raise ValidationError("Status must be CONFIRMED or REJECTED.")

        organizer_id = organizer.id
        txn = await self.load(transaction_id)
        if organizer.role != UserRole.admin and await self._event_organizer(txn.event_id) != organizer_id:
            raise NotFound("Transaction not found.")

        txn = await self._expire_if_overdue(txn)

        if txn.status.is_terminal:
            logger.warning(
                "Transaction %s already %s; ignoring %s from %s",
                txn.id, txn.status.value, status.value, organizer_id,
            )
            return txn

        txn_id = txn.id
        try:
            return await self._apply(txn, status, actor_id=organizer_id)
        except TransitionConflict:
            logger.warning("Transaction %s changed while deciding %s; returning current state", txn_id, status.value)
            return await self.load(txn_id)

    async def timeline(self, transaction_id: str, principal: User) -> Sequence[TransactionEvent]:
        txn = await self.load(transaction_id)
        await self._ensure_visible(txn, principal)
        res = await self.db.execute(
            select(TransactionEvent)
            .where(TransactionEvent.transaction_id == transaction_id)
            .order_by(TransactionEvent.created_at.asc(), TransactionEvent.id.asc())
        )
        return res.scalars().all()
