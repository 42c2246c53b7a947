"""Transaction lifecycle: creation debits, deadline expiry, proof upload and organizer decisions."""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.core.clock import as_utc
from app.core.errors import (
    CouponRejected,
    InsufficientPoints,
    InsufficientSeats,
    InvalidTransition,
    NotFound,
    PaymentDeadlinePassed,
    TransitionConflict,
    ValidationError,
)
from app.models.coupon import Coupon, DiscountType
from app.models.point import PointKind, PointRecord
from app.models.transaction import Transaction, TransactionStatus
from app.models.user import UserRole
from app.services.coupons import CouponService
from app.services.inventory import SeatInventory
from app.services.points import PointsLedger
from app.services.reconciliation import ReconciliationSweeper
from app.services.transactions import TransactionService
from tests.conftest import create_test_event, create_test_user, give_points

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
async def organizer(db):
    return await create_test_user(db, "org@example.com", UserRole.organizer, "Organizer")


@pytest.fixture
async def buyer(db):
    return await create_test_user(db, "buyer@example.com", UserRole.customer, "Buyer")


@pytest.fixture
async def event(db, organizer, clock):
    return await create_test_event(db, organizer, clock, price=100_000, capacity=10)


@pytest.fixture
def service(db, clock, storage):
    return TransactionService(db, clock, storage=storage)


async def _used_count(db, coupon_id):
    res = await db.execute(select(Coupon.used_count).where(Coupon.id == coupon_id))
    return res.scalar_one()


def _serve_stale_once(monkeypatch, service, stale):
    """Make the next `load` on `service` hand back `stale`, as if it was read just before a rival write."""
    original = service.load
    pending = [stale]

    async def load(transaction_id):
        if pending:
            return pending.pop()
        return await original(transaction_id)

    monkeypatch.setattr(service, "load", load)


async def _refund_count(db, txn_id):
    res = await db.execute(
        select(func.count())
        .select_from(PointRecord)
        .where(PointRecord.related_transaction_id == txn_id, PointRecord.kind == PointKind.refund)
    )
    return res.scalar_one()


class TestCreate:
    async def test_debits_seats_points_and_coupon(self, db, clock, service, buyer, organizer, event):
        await give_points(db, buyer, 20_000, clock)
        coupon = await CouponService(db, clock).create(
            creator=organizer,
            code="JAZZ10",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=10,
            max_uses=5,
            event_id=event.id,
        )

        txn = await service.create(buyer=buyer, event_id=event.id, quantity=2, points=20_000, coupon_code="jazz10")

        assert txn.status == TransactionStatus.WAITING_PAYMENT
        assert txn.subtotal == 200_000
        assert txn.discount_amount == 20_000
        assert txn.points_used == 20_000
        assert txn.total_amount == 160_000
        assert txn.coupon_id == coupon.id
        assert as_utc(txn.payment_deadline) == clock() + timedelta(minutes=120)

        assert await SeatInventory(db).available(event.id) == 8
        assert await PointsLedger(db, clock).get_balance(buyer.id) == 0
        assert await _used_count(db, coupon.id) == 1

    async def test_insufficient_points_leaves_everything_untouched(
        self, db, clock, service, buyer, organizer, event
    ):
        await give_points(db, buyer, 500, clock)
        coupon = await CouponService(db, clock).create(
            creator=organizer, code="SAVE", discount_type=DiscountType.FIXED_AMOUNT, discount_value=5_000
        )
        event_id, buyer_id, coupon_id = event.id, buyer.id, coupon.id

        with pytest.raises(InsufficientPoints):
            await service.create(buyer=buyer, event_id=event_id, quantity=1, points=1_000, coupon_code="SAVE")

        assert await SeatInventory(db).available(event_id) == 10
        assert await PointsLedger(db, clock).get_balance(buyer_id) == 500
        assert await _used_count(db, coupon_id) == 0
        res = await db.execute(select(func.count()).select_from(Transaction))
        assert res.scalar_one() == 0

    async def test_insufficient_seats(self, db, service, buyer, event):
        event_id = event.id
        with pytest.raises(InsufficientSeats):
            await service.create(buyer=buyer, event_id=event_id, quantity=11)
        assert await SeatInventory(db).available(event_id) == 10

    async def test_points_above_payable_rejected(self, db, clock, service, buyer, event):
        await give_points(db, buyer, 500_000, clock)
        with pytest.raises(ValidationError):
            await service.create(buyer=buyer, event_id=event.id, quantity=1, points=100_001)

    async def test_coupon_rejection_carries_reason(self, service, buyer, event):
        with pytest.raises(CouponRejected) as exc:
            await service.create(buyer=buyer, event_id=event.id, quantity=1, coupon_code="MISSING")
        assert exc.value.reason == "NotFound"

    async def test_started_event_rejected(self, db, clock, service, buyer, organizer):
        soon = await create_test_event(db, organizer, clock, title="Matinee", starts_in=timedelta(hours=1))
        clock.advance(hours=2)
        with pytest.raises(ValidationError):
            await service.create(buyer=buyer, event_id=soon.id, quantity=1)

    async def test_unknown_event(self, service, buyer):
        with pytest.raises(NotFound):
            await service.create(buyer=buyer, event_id="no-such-event", quantity=1)


class TestExpiry:
    async def test_read_path_expires_and_refunds(self, db, clock, service, buyer, organizer, event):
        await give_points(db, buyer, 5_000, clock)
        coupon = await CouponService(db, clock).create(
            creator=organizer, code="ONE", discount_type=DiscountType.FIXED_AMOUNT, discount_value=1_000, max_uses=1
        )
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=3, points=5_000, coupon_code="ONE")

        clock.advance(hours=2, minutes=1)
        txn = await service.get(txn.id, buyer)

        assert txn.status == TransactionStatus.EXPIRED
        assert txn.decided_at is not None
        assert await SeatInventory(db).available(event.id) == 10
        assert await PointsLedger(db, clock).get_balance(buyer.id) == 5_000
        assert await _used_count(db, coupon.id) == 0

    async def test_not_expired_before_deadline(self, clock, service, buyer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        clock.advance(hours=1, minutes=59)
        assert (await service.get(txn.id, buyer)).status == TransactionStatus.WAITING_PAYMENT

    async def test_listing_expires_overdue(self, clock, service, buyer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        clock.advance(hours=3)

        items = await service.list_for_user(buyer.id)
        assert [(t.id, t.status) for t in items] == [(txn.id, TransactionStatus.EXPIRED)]

    async def test_listing_expires_only_the_returned_page(self, db, clock, service, buyer, event):
        admin = await create_test_user(db, "admin@example.com", UserRole.admin, "Admin")
        older = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        clock.advance(minutes=1)
        newer = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        clock.advance(hours=3)

        page = await service.list_for_organizer(admin, limit=1)

        assert [(t.id, t.status) for t in page] == [(newer.id, TransactionStatus.EXPIRED)]
        assert (await service.load(older.id)).status == TransactionStatus.WAITING_PAYMENT
        assert await SeatInventory(db).available(event.id) == 9

    async def test_status_filter_drops_rows_expired_on_read(self, clock, service, buyer, event):
        await service.create(buyer=buyer, event_id=event.id, quantity=1)
        clock.advance(hours=3)

        assert await service.list_for_user(buyer.id, status=TransactionStatus.WAITING_PAYMENT) == []
        expired = await service.list_for_user(buyer.id, status=TransactionStatus.EXPIRED)
        assert [t.status for t in expired] == [TransactionStatus.EXPIRED]

    async def test_racing_expiry_refunds_once(self, db, session_factory, clock, storage, buyer, event):
        await give_points(db, buyer, 2_000, clock)
        txn = await TransactionService(db, clock, storage=storage).create(
            buyer=buyer, event_id=event.id, quantity=2, points=2_000
        )
        clock.advance(hours=3)

        async with session_factory() as first, session_factory() as second:
            svc_first = TransactionService(first, clock, storage=storage)
            svc_second = TransactionService(second, clock, storage=storage)

            stale = await svc_first.load(txn.id)
            await svc_second.expire(await svc_second.load(txn.id))

            with pytest.raises(TransitionConflict):
                await svc_first.expire(stale)

        async with session_factory() as check:
            assert await SeatInventory(check).available(event.id) == 10
            assert await PointsLedger(check, clock).get_balance(buyer.id) == 2_000
            assert await _refund_count(check, txn.id) == 1

    async def test_read_after_sweeper_won_returns_expired(
        self, db, session_factory, clock, storage, monkeypatch, buyer, event
    ):
        await give_points(db, buyer, 2_000, clock)
        txn = await TransactionService(db, clock, storage=storage).create(
            buyer=buyer, event_id=event.id, quantity=2, points=2_000
        )
        clock.advance(hours=3)

        async with session_factory() as reader:
            svc_reader = TransactionService(reader, clock, storage=storage)
            _serve_stale_once(monkeypatch, svc_reader, await svc_reader.load(txn.id))

            assert (await ReconciliationSweeper(session_factory, clock).run()).expired == 1

            seen = await svc_reader.get(txn.id, buyer)
            assert seen.status == TransactionStatus.EXPIRED

        async with session_factory() as check:
            assert await SeatInventory(check).available(event.id) == 10
            assert await PointsLedger(check, clock).get_balance(buyer.id) == 2_000
            assert await _refund_count(check, txn.id) == 1

    async def test_expire_twice_is_invalid(self, clock, service, buyer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        clock.advance(hours=3)
        txn = await service.expire(txn)

        with pytest.raises(InvalidTransition):
            await service.expire(txn)


class TestPaymentProof:
    async def test_upload_moves_to_waiting_confirmation(self, service, storage, buyer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)

        txn = await service.submit_payment_proof(txn.id, buyer, content_type="image/png", data=PNG)

        assert txn.status == TransactionStatus.WAITING_CONFIRMATION
        assert txn.payment_proof.startswith("/uploads/payment-proofs/")
        assert (storage.root / txn.payment_proof.rsplit("/", 1)[-1]).read_bytes() == PNG

    async def test_upload_after_deadline_expires(self, db, clock, service, storage, buyer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=2)
        clock.advance(hours=3)

        with pytest.raises(PaymentDeadlinePassed):
            await service.submit_payment_proof(txn.id, buyer, content_type="image/png", data=PNG)

        assert (await service.load(txn.id)).status == TransactionStatus.EXPIRED
        assert await SeatInventory(db).available(event.id) == 10
        assert not storage.root.exists() or not any(storage.root.iterdir())

    async def test_rejects_non_image(self, service, buyer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        with pytest.raises(ValidationError):
            await service.submit_payment_proof(txn.id, buyer, content_type="application/pdf", data=b"%PDF-1.4")
        assert (await service.load(txn.id)).status == TransactionStatus.WAITING_PAYMENT

    async def test_rejects_second_upload(self, service, buyer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        await service.submit_payment_proof(txn.id, buyer, content_type="image/png", data=PNG)
        with pytest.raises(InvalidTransition):
            await service.submit_payment_proof(txn.id, buyer, content_type="image/png", data=PNG)

    async def test_other_user_cannot_upload(self, db, service, buyer, event):
        other = await create_test_user(db, "other@example.com")
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        with pytest.raises(NotFound):
            await service.submit_payment_proof(txn.id, other, content_type="image/png", data=PNG)


class TestOrganizerDecision:
    async def _paid(self, service, buyer, event, **kwargs):
        txn = await service.create(buyer=buyer, event_id=event.id, **kwargs)
        return await service.submit_payment_proof(txn.id, buyer, content_type="image/jpeg", data=PNG)

    async def test_confirm_grants_purchase_reward(self, db, clock, service, buyer, organizer, event):
        txn = await self._paid(service, buyer, event, quantity=1)

        txn = await service.set_status(txn.id, organizer, TransactionStatus.CONFIRMED)

        assert txn.status == TransactionStatus.CONFIRMED
        assert txn.decided_at is not None
        history = await PointsLedger(db, clock).get_history(buyer.id)
        assert [(r.kind, r.amount, r.description) for r in history] == [
            (PointKind.purchase_reward, 2_000, "Purchase reward for event Jazz Night")
        ]
        assert await SeatInventory(db).available(event.id) == 9

    async def test_reject_refunds(self, db, clock, service, buyer, organizer, event):
        await give_points(db, buyer, 10_000, clock)
        txn = await self._paid(service, buyer, event, quantity=4, points=10_000)
        clock.advance(minutes=5)

        txn = await service.set_status(txn.id, organizer, TransactionStatus.REJECTED)

        assert txn.status == TransactionStatus.REJECTED
        assert await SeatInventory(db).available(event.id) == 10
        assert await PointsLedger(db, clock).get_balance(buyer.id) == 10_000
        refunds = await PointsLedger(db, clock).get_history(buyer.id, limit=1)
        assert refunds[0].description == f"Points refunded - Transaction {txn.id} rejected"

    async def test_decision_on_settled_transaction_is_ignored(self, clock, service, buyer, organizer, event):
        txn = await self._paid(service, buyer, event, quantity=1)
        await service.set_status(txn.id, organizer, TransactionStatus.CONFIRMED)

        txn = await service.set_status(txn.id, organizer, TransactionStatus.REJECTED)
        assert txn.status == TransactionStatus.CONFIRMED

    async def test_decision_racing_another_decision_returns_winner(
        self, db, session_factory, clock, storage, monkeypatch, service, buyer, organizer, event
    ):
        txn = await self._paid(service, buyer, event, quantity=1)

        async with session_factory() as first, session_factory() as second:
            svc_first = TransactionService(first, clock, storage=storage)
            svc_second = TransactionService(second, clock, storage=storage)
            _serve_stale_once(monkeypatch, svc_first, await svc_first.load(txn.id))

            await svc_second.set_status(txn.id, organizer, TransactionStatus.CONFIRMED)
            result = await svc_first.set_status(txn.id, organizer, TransactionStatus.REJECTED)

        assert result.id == txn.id
        assert result.status == TransactionStatus.CONFIRMED
        assert await SeatInventory(db).available(event.id) == 9
        assert await _refund_count(db, txn.id) == 0

    async def test_cannot_confirm_unpaid(self, service, buyer, organizer, event):
        txn = await service.create(buyer=buyer, event_id=event.id, quantity=1)
        with pytest.raises(InvalidTransition):
            await service.set_status(txn.id, organizer, TransactionStatus.CONFIRMED)

    async def test_only_confirm_or_reject(self, service, buyer, organizer, event):
        txn = await self._paid(service, buyer, event, quantity=1)
        with pytest.raises(ValidationError):
            await service.set_status(txn.id, organizer, TransactionStatus.CANCELLED)

    async def test_foreign_organizer_sees_nothing(self, db, service, buyer, event):
        rival = await create_test_user(db, "rival@example.com", UserRole.organizer, "Rival")
        txn = await self._paid(service, buyer, event, quantity=1)
        with pytest.raises(NotFound):
            await service.set_status(txn.id, rival, TransactionStatus.CONFIRMED)
        assert await service.list_for_organizer(rival) == []

    async def test_timeline_records_each_step(self, service, buyer, organizer, event):
        txn = await self._paid(service, buyer, event, quantity=1)
        await service.set_status(txn.id, organizer, TransactionStatus.CONFIRMED)

        steps = await service.timeline(txn.id, organizer)
        assert [(s.from_status, s.to_status) for s in steps] == [
            (None, "WAITING_PAYMENT"),
            ("WAITING_PAYMENT", "WAITING_CONFIRMATION"),
            ("WAITING_CONFIRMATION", "CONFIRMED"),
        ]
        assert steps[-1].actor_user_id == organizer.id
