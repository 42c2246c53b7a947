"""Coupon discount maths, validation precedence and usage accounting."""
from datetime import timedelta

import pytest

from app.core.errors import Forbidden, ValidationError
from app.models.coupon import DiscountType
from app.models.user import UserRole
from app.services.coupons import CouponRejection, CouponService, calculate_discount
from tests.conftest import create_test_event, create_test_user


class TestCalculateDiscount:
    def test_percentage(self):
        assert calculate_discount(100_000, DiscountType.PERCENTAGE, 10) == 10_000

    def test_percentage_is_floored(self):
        assert calculate_discount(999, DiscountType.PERCENTAGE, 15) == 149

    def test_fixed_amount_capped_at_total(self):
        assert calculate_discount(100_000, DiscountType.FIXED_AMOUNT, 150_000) == 100_000
        assert calculate_discount(100_000, DiscountType.FIXED_AMOUNT, 25_000) == 25_000

    def test_unknown_type_gives_nothing(self):
        assert calculate_discount(100_000, "BUY_ONE_GET_ONE", 50) == 0


@pytest.fixture
async def admin(db):
    return await create_test_user(db, "admin@example.com", UserRole.admin, "Admin")


@pytest.fixture
async def organizer(db):
    return await create_test_user(db, "org@example.com", UserRole.organizer, "Organizer")


@pytest.fixture
async def buyer(db):
    return await create_test_user(db, "buyer@example.com")


class TestValidate:
    async def test_unknown_code(self, db, clock, buyer):
        check = await CouponService(db, clock).validate("NOPE", buyer.id, None)
        assert not check.valid
        assert check.reason == CouponRejection.NOT_FOUND
        assert check.coupon is None

    async def test_code_is_normalized(self, db, clock, admin, buyer):
        svc = CouponService(db, clock)
        await svc.create(creator=admin, code="SUMMER10", discount_type=DiscountType.PERCENTAGE, discount_value=10)
        check = await svc.validate("  summer10 ", buyer.id, None)
        assert check.valid
        assert check.coupon.code == "SUMMER10"

    async def test_usage_limit_reached(self, db, clock, admin, buyer):
        svc = CouponService(db, clock)
        coupon = await svc.create(
            creator=admin, code="ONCE", discount_type=DiscountType.FIXED_AMOUNT, discount_value=5_000, max_uses=1
        )
        assert await svc.mark_used(coupon.id)

        check = await svc.validate("ONCE", buyer.id, None)
        assert check.reason == CouponRejection.USAGE_LIMIT_REACHED

    async def test_expiry_reported_before_usage_limit(self, db, clock, admin, buyer):
        svc = CouponService(db, clock)
        coupon = await svc.create(
            creator=admin,
            code="OLD",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=20,
            max_uses=1,
            expires_at=clock() + timedelta(days=1),
        )
        await svc.mark_used(coupon.id)
        clock.advance(days=2)

        check = await svc.validate("OLD", buyer.id, None)
        assert check.reason == CouponRejection.EXPIRED

    async def test_inactive(self, db, clock, admin, buyer):
        svc = CouponService(db, clock)
        coupon = await svc.create(creator=admin, code="OFF", discount_type=DiscountType.PERCENTAGE, discount_value=5)
        coupon.is_active = False
        await db.commit()

        check = await svc.validate("OFF", buyer.id, None)
        assert check.reason == CouponRejection.INACTIVE

    async def test_event_scope(self, db, clock, organizer, buyer):
        svc = CouponService(db, clock)
        event = await create_test_event(db, organizer, clock)
        other = await create_test_event(db, organizer, clock, title="Other")
        await svc.create(
            creator=organizer,
            code="JAZZ",
            discount_type=DiscountType.FIXED_AMOUNT,
            discount_value=10_000,
            event_id=event.id,
        )

        assert (await svc.validate("JAZZ", buyer.id, event.id)).valid
        check = await svc.validate("JAZZ", buyer.id, other.id)
        assert check.reason == CouponRejection.EVENT_SCOPE_MISMATCH

    async def test_user_scope(self, db, clock, admin, buyer):
        svc = CouponService(db, clock)
        stranger = await create_test_user(db, "stranger@example.com")
        await svc.create(
            creator=admin, code="MINE", discount_type=DiscountType.PERCENTAGE, discount_value=10, user_id=buyer.id
        )

        assert (await svc.validate("MINE", buyer.id, None)).valid
        check = await svc.validate("MINE", stranger.id, None)
        assert check.reason == CouponRejection.USER_SCOPE_MISMATCH


class TestUsage:
    async def test_mark_used_stops_at_max_uses(self, db, clock, admin):
        svc = CouponService(db, clock)
        coupon = await svc.create(
            creator=admin, code="TWICE", discount_type=DiscountType.PERCENTAGE, discount_value=10, max_uses=2
        )
        assert await svc.mark_used(coupon.id)
        assert await svc.mark_used(coupon.id)
        assert not await svc.mark_used(coupon.id)

        await db.refresh(coupon)
        assert coupon.used_count == 2

    async def test_mark_unused_never_goes_negative(self, db, clock, admin):
        svc = CouponService(db, clock)
        coupon = await svc.create(creator=admin, code="ZERO", discount_type=DiscountType.PERCENTAGE, discount_value=10)
        await svc.mark_unused(coupon.id)

        await db.refresh(coupon)
        assert coupon.used_count == 0


class TestCreate:
    async def test_duplicate_code(self, db, clock, admin):
        svc = CouponService(db, clock)
        await svc.create(creator=admin, code="DUP", discount_type=DiscountType.PERCENTAGE, discount_value=10)
        with pytest.raises(ValidationError):
            await svc.create(creator=admin, code="dup", discount_type=DiscountType.PERCENTAGE, discount_value=10)

    async def test_percentage_over_100(self, db, clock, admin):
        with pytest.raises(ValidationError):
            await CouponService(db, clock).create(
                creator=admin, code="ALL", discount_type=DiscountType.PERCENTAGE, discount_value=101
            )

    async def test_organizer_cannot_scope_to_foreign_event(self, db, clock, organizer):
        rival = await create_test_user(db, "rival@example.com", UserRole.organizer, "Rival")
        event = await create_test_event(db, rival, clock)
        with pytest.raises(Forbidden):
            await CouponService(db, clock).create(
                creator=organizer,
                code="STEAL",
                discount_type=DiscountType.FIXED_AMOUNT,
                discount_value=1_000,
                event_id=event.id,
            )

    async def test_generated_code_when_missing(self, db, clock, organizer):
        coupon = await CouponService(db, clock).create(
            creator=organizer, code=None, discount_type=DiscountType.FIXED_AMOUNT, discount_value=1_000
        )
        assert coupon.code.startswith("EVT-")
        assert coupon.organizer_id == organizer.id

    async def test_list_available_hides_exhausted(self, db, clock, admin, buyer):
        svc = CouponService(db, clock)
        spent = await svc.create(
            creator=admin, code="SPENT", discount_type=DiscountType.PERCENTAGE, discount_value=10, max_uses=1
        )
        await svc.mark_used(spent.id)
        await svc.create(creator=admin, code="FRESH", discount_type=DiscountType.PERCENTAGE, discount_value=10)

        codes = [c.code for c in await svc.list_available(buyer.id)]
        assert codes == ["FRESH"]
