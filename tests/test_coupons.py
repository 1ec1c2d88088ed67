"""
Tests for coupon evaluation and usage accounting.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from checkout_platform.core.coupons import (
    CouponRejection,
    CouponService,
    calculate_discount,
    evaluate_coupon,
    normalize_code,
)
from checkout_platform.core.exceptions import CouponRejectedError
from checkout_platform.database.models import Coupon

NOW = datetime(2026, 3, 1, 12, 0, 0)


def build_coupon(**overrides: Any) -> Coupon:
    fields: dict[str, Any] = {
        "id": 1,
        "code": "LAUNCH20",
        "course_id": 1,
        "discount_type": "percentage",
        "percent_off": Decimal("20"),
        "amount_off_cents": None,
        "min_order_cents": None,
        "max_discount_cents": None,
        "valid_from": None,
        "valid_until": None,
        "usage_limit": None,
        "used_count": 0,
        "is_active": True,
    }
    fields.update(overrides)
    return Coupon(**fields)


class TestEvaluateCoupon:
    """Test suite for evaluate_coupon."""

    @pytest.mark.unit
    def test_valid_percentage_coupon(self) -> None:
        evaluation = evaluate_coupon(build_coupon(), course_id=1, order_value_cents=10000, now=NOW)

        assert evaluation.valid
        assert evaluation.discount_cents == 2000
        assert evaluation.to_dict()["code"] == "LAUNCH20"

    @pytest.mark.unit
    def test_missing_coupon(self) -> None:
        evaluation = evaluate_coupon(None, course_id=1, order_value_cents=10000, now=NOW)

        assert evaluation.rejection is CouponRejection.NOT_FOUND
        assert evaluation.to_dict() == {
            "valid": False,
            "coupon_id": None,
            "code": None,
            "discount_cents": 0,
            "reason": "not_found",
            "message": "Coupon not found",
        }

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"is_active": False}, CouponRejection.INACTIVE),
            ({"course_id": 2}, CouponRejection.WRONG_PRODUCT),
            ({"valid_from": NOW + timedelta(days=1)}, CouponRejection.NOT_YET_VALID),
            ({"valid_until": NOW - timedelta(seconds=1)}, CouponRejection.EXPIRED),
            ({"usage_limit": 5, "used_count": 5}, CouponRejection.EXHAUSTED),
            ({"min_order_cents": 20000}, CouponRejection.BELOW_MINIMUM),
        ],
    )
    def test_rejection_reasons(self, overrides: dict, reason: CouponRejection) -> None:
        evaluation = evaluate_coupon(
            build_coupon(**overrides), course_id=1, order_value_cents=10000, now=NOW
        )

        assert not evaluation.valid
        assert evaluation.rejection is reason
        assert evaluation.discount_cents == 0

    @pytest.mark.unit
    def test_first_failing_check_wins(self) -> None:
        """An inactive, expired coupon for another course is reported as inactive."""
        coupon = build_coupon(
            is_active=False, course_id=2, valid_until=NOW - timedelta(days=1)
        )

        evaluation = evaluate_coupon(coupon, course_id=1, order_value_cents=10000, now=NOW)

        assert evaluation.rejection is CouponRejection.INACTIVE

    @pytest.mark.unit
    def test_window_bounds_are_inclusive(self) -> None:
        coupon = build_coupon(valid_from=NOW, valid_until=NOW)

        assert evaluate_coupon(coupon, 1, 10000, now=NOW).valid

    @pytest.mark.unit
    def test_below_minimum_message_shows_amount(self) -> None:
        evaluation = evaluate_coupon(
            build_coupon(min_order_cents=5000), course_id=1, order_value_cents=4999, now=NOW
        )

        assert evaluation.message == "Minimum order value is USD 50.00"

    @pytest.mark.unit
    def test_raise_if_rejected(self) -> None:
        evaluation = evaluate_coupon(
            build_coupon(is_active=False), course_id=1, order_value_cents=10000, now=NOW
        )

        with pytest.raises(CouponRejectedError) as exc_info:
            evaluation.raise_if_rejected()

        assert exc_info.value.reason == "inactive"
        assert exc_info.value.http_status == 400


class TestCalculateDiscount:
    """Test suite for discount amounts."""

    @pytest.mark.unit
    def test_percentage_capped_by_max_discount(self) -> None:
        coupon = build_coupon(percent_off=Decimal("50"), max_discount_cents=1500)

        assert calculate_discount(coupon, 10000) == 1500

    @pytest.mark.unit
    def test_percentage_rounds_half_up(self) -> None:
        coupon = build_coupon(percent_off=Decimal("15"))

        assert calculate_discount(coupon, 333) == 50

    @pytest.mark.unit
    def test_fixed_discount(self) -> None:
        coupon = build_coupon(discount_type="fixed", percent_off=None, amount_off_cents=2500)

        assert calculate_discount(coupon, 10000) == 2500

    @pytest.mark.unit
    def test_fixed_discount_never_exceeds_order(self) -> None:
        coupon = build_coupon(discount_type="fixed", percent_off=None, amount_off_cents=5000)

        assert calculate_discount(coupon, 3000) == 3000

    @pytest.mark.unit
    def test_normalize_code(self) -> None:
        assert normalize_code("  launch20 ") == "LAUNCH20"


class TestCouponService:
    """Test suite for coupon lookups and reservations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validate_finds_code_case_insensitively(self, db, course) -> None:
        coupon = build_coupon(id=None, course_id=course.id)
        db.add(coupon)
        await db.flush()

        evaluation = await CouponService().validate(db, " launch20", course.id, 10000)

        assert evaluation.valid
        assert evaluation.coupon.id == coupon.id
        assert evaluation.discount_cents == 2000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validate_unknown_code(self, db, course) -> None:
        evaluation = await CouponService().validate(db, "NOPE", course.id, 10000)

        assert evaluation.rejection is CouponRejection.NOT_FOUND

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_respects_usage_limit(self, db, course) -> None:
        coupon = build_coupon(id=None, course_id=course.id, usage_limit=2)
        db.add(coupon)
        await db.flush()
        service = CouponService()

        results = [await service.reserve(db, coupon.id) for _ in range(3)]
        await db.refresh(coupon)

        assert results == [True, True, False]
        assert coupon.used_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_inactive_coupon(self, db, course) -> None:
        coupon = build_coupon(id=None, course_id=course.id, is_active=False)
        db.add(coupon)
        await db.flush()

        assert await CouponService().reserve(db, coupon.id) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_gives_back_one_use(self, db, course) -> None:
        coupon = build_coupon(id=None, course_id=course.id, usage_limit=1, used_count=1)
        db.add(coupon)
        await db.flush()
        service = CouponService()

        await service.release(db, coupon.id)
        await service.release(db, coupon.id)
        await db.refresh(coupon)

        assert coupon.used_count == 0
        assert await service.reserve(db, coupon.id) is True
