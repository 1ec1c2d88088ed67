"""
Tests for checkout pricing.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from checkout_platform.core.exceptions import (
    CouponRejectedError,
    DomainValidationError,
    InvalidOrderBumpError,
    NotFoundError,
    ProductUnavailableError,
)
from checkout_platform.core.pricing import (
    PricingEngine,
    ProductSource,
    calculate_totals,
    offer_is_valid,
    reserve_offer,
    resolve_base_price,
)
from checkout_platform.database.models import Coupon, Course, Offer, OrderBump, SalesLink
from factories import make_course

NOW = datetime(2026, 3, 1, 12, 0, 0)


def build_offer(**overrides: Any) -> Offer:
    fields: dict[str, Any] = {
        "link_id": "offer-abc",
        "course_id": 1,
        "title": "Launch week",
        "sale_price_cents": 7000,
        "valid_from": None,
        "valid_until": None,
        "max_uses": None,
        "current_uses": 0,
        "is_active": True,
    }
    fields.update(overrides)
    return Offer(**fields)


async def add_bump(db, course: Course, price_cents: int, **overrides: Any) -> OrderBump:
    bump = OrderBump(
        course_id=course.id,
        title=overrides.pop("title", "Workbook"),
        price_cents=price_cents,
        position=overrides.pop("position", 0),
        is_active=overrides.pop("is_active", True),
    )
    db.add(bump)
    await db.flush()
    return bump


class TestPriceArithmetic:
    """Test suite for the pure pricing helpers."""

    @pytest.mark.unit
    def test_calculate_totals(self) -> None:
        assert calculate_totals(10000, [2000, 500], 3000) == (12500, 3000, 9500)

    @pytest.mark.unit
    def test_discount_never_makes_total_negative(self) -> None:
        assert calculate_totals(1000, [], 5000) == (1000, 1000, 0)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "overrides, expected",
        [
            ({}, True),
            ({"is_active": False}, False),
            ({"valid_from": NOW + timedelta(hours=1)}, False),
            ({"valid_until": NOW - timedelta(hours=1)}, False),
            ({"max_uses": 3, "current_uses": 3}, False),
            ({"max_uses": 3, "current_uses": 2}, True),
        ],
    )
    def test_offer_is_valid(self, overrides: dict, expected: bool) -> None:
        assert offer_is_valid(build_offer(**overrides), NOW) is expected

    @pytest.mark.unit
    def test_base_price_precedence(self) -> None:
        """Sales link price beats a valid offer, which beats the list price."""
        course = Course(id=1, price_cents=10000)
        link = SalesLink(link_id="link-1", course_id=1, custom_price_cents=5000)
        offer = build_offer()

        assert resolve_base_price(ProductSource(course, sales_link=link, offer=offer), NOW) == 5000
        assert resolve_base_price(ProductSource(course, offer=offer), NOW) == 7000
        assert resolve_base_price(ProductSource(course), NOW) == 10000

    @pytest.mark.unit
    def test_link_without_custom_price_uses_list_price(self) -> None:
        course = Course(id=1, price_cents=10000)
        link = SalesLink(link_id="link-1", course_id=1, custom_price_cents=None)

        assert resolve_base_price(ProductSource(course, sales_link=link), NOW) == 10000

    @pytest.mark.unit
    def test_expired_offer_falls_back_to_list_price(self) -> None:
        course = Course(id=1, price_cents=10000)
        offer = build_offer(valid_until=NOW - timedelta(days=1))

        assert resolve_base_price(ProductSource(course, offer=offer), NOW) == 10000


class TestResolveSource:
    """Test suite for PricingEngine.resolve_source."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requires_exactly_one_reference(self, db, course) -> None:
        engine = PricingEngine()

        with pytest.raises(DomainValidationError):
            await engine.resolve_source(db)
        with pytest.raises(DomainValidationError):
            await engine.resolve_source(db, course_id=course.id, sales_link_id="abc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sales_link_resolves_its_course(self, db, course) -> None:
        link = SalesLink(link_id="link-1", course_id=course.id, custom_price_cents=4900)
        db.add(link)
        await db.flush()

        source = await PricingEngine().resolve_source(db, sales_link_id="link-1")

        assert source.course.id == course.id
        assert source.sales_link is link

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_and_inactive_links(self, db, course) -> None:
        db.add(SalesLink(link_id="off", course_id=course.id, is_active=False))
        await db.flush()
        engine = PricingEngine()

        with pytest.raises(NotFoundError):
            await engine.resolve_source(db, sales_link_id="missing")
        with pytest.raises(ProductUnavailableError):
            await engine.resolve_source(db, sales_link_id="off")
        with pytest.raises(NotFoundError):
            await engine.resolve_source(db, offer_link_id="missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_course(self, db, course) -> None:
        course.is_active = False
        await db.flush()

        with pytest.raises(ProductUnavailableError):
            await PricingEngine().resolve_source(db, course_id=course.id)


class TestQuote:
    """Test suite for PricingEngine.quote."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bumps_and_coupon_on_base_price(self, db, course) -> None:
        """The coupon discounts the product, not the bumps."""
        bump = await add_bump(db, course, 2000)
        db.add(
            Coupon(
                code="TEN",
                course_id=course.id,
                discount_type="percentage",
                percent_off=Decimal("10"),
                used_count=0,
                is_active=True,
            )
        )
        await db.flush()
        engine = PricingEngine()
        source = await engine.resolve_source(db, course_id=course.id)

        quote = await engine.quote(db, source, [bump.id], "ten")

        assert quote.base_price_cents == 10000
        assert quote.bumps_cents == 2000
        assert quote.subtotal_cents == 12000
        assert quote.discount_cents == 1000
        assert quote.total_cents == 11000
        assert [item.kind for item in quote.items] == ["product", "order_bump"]
        assert quote.to_dict()["coupon_code"] == "TEN"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_bump_ids_count_once(self, db, course) -> None:
        bump = await add_bump(db, course, 1500)
        engine = PricingEngine()
        source = await engine.resolve_source(db, course_id=course.id)

        quote = await engine.quote(db, source, [bump.id, bump.id])

        assert quote.total_cents == 11500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bump_of_another_course_rejected(self, db, producer, course) -> None:
        other = await make_course(db, producer, title="Other Course")
        foreign = await add_bump(db, other, 900)
        engine = PricingEngine()
        source = await engine.resolve_source(db, course_id=course.id)

        with pytest.raises(InvalidOrderBumpError):
            await engine.quote(db, source, [foreign.id])
        with pytest.raises(InvalidOrderBumpError, match="Unknown order bumps"):
            await engine.quote(db, source, [424242])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_bump_rejected(self, db, course) -> None:
        bump = await add_bump(db, course, 900, is_active=False)
        engine = PricingEngine()
        source = await engine.resolve_source(db, course_id=course.id)

        with pytest.raises(InvalidOrderBumpError):
            await engine.quote(db, source, [bump.id])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_coupon_raises(self, db, course) -> None:
        engine = PricingEngine()
        source = await engine.resolve_source(db, course_id=course.id)

        with pytest.raises(CouponRejectedError) as exc_info:
            await engine.quote(db, source, coupon_code="MISSING")

        assert exc_info.value.reason == "not_found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_offer_link_price(self, db, course) -> None:
        db.add(build_offer(course_id=course.id))
        await db.flush()
        engine = PricingEngine()
        source = await engine.resolve_source(db, offer_link_id="offer-abc")

        quote = await engine.quote(db, source)

        assert quote.base_price_cents == 7000
        assert quote.list_price_cents == 10000
        assert quote.offer is source.offer

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_offer_link_priced_at_list_price(self, db, course) -> None:
        db.add(build_offer(course_id=course.id, valid_until=NOW))
        await db.flush()
        engine = PricingEngine()
        source = await engine.resolve_source(db, offer_link_id="offer-abc")

        quote = await engine.quote(db, source, now=NOW + timedelta(minutes=1))

        assert quote.base_price_cents == 10000
        assert quote.total_cents == 10000
        assert quote.offer is None


class TestOfferReservation:
    """Test suite for offer use accounting."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_offer_respects_max_uses(self, db, course) -> None:
        offer = build_offer(course_id=course.id, max_uses=1)
        db.add(offer)
        await db.flush()

        assert await reserve_offer(db, offer.id, now=NOW) is True
        assert await reserve_offer(db, offer.id, now=NOW) is False

        await db.refresh(offer)
        assert offer.current_uses == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_expired_offer(self, db, course) -> None:
        offer = build_offer(course_id=course.id, valid_until=NOW - timedelta(days=1))
        db.add(offer)
        await db.flush()

        assert await reserve_offer(db, offer.id, now=NOW) is False
