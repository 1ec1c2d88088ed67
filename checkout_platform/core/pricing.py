"""
Checkout pricing.

The base price of a course comes from, in order of precedence, a sales
link's custom price, a currently valid offer, or the course list price.
Selected order bumps are added and an optional coupon is applied:

    subtotal = base + sum(bumps)
    total = subtotal - discount        (never below zero)

The coupon is evaluated against the base price, the product it is bound to.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.core.coupons import CouponEvaluation, CouponService
from checkout_platform.core.exceptions import (
    DomainValidationError,
    InvalidOrderBumpError,
    NotFoundError,
    ProductUnavailableError,
)
from checkout_platform.database.models import Coupon, Course, Offer, OrderBump, SalesLink, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LineItem:
    kind: str  # product, order_bump
    reference_id: int
    description: str
    amount_cents: int


@dataclass(frozen=True)
class ProductSource:
    """The course being bought and the link it was reached through."""

    course: Course
    sales_link: Optional[SalesLink] = None
    offer: Optional[Offer] = None


@dataclass
class PriceQuote:
    """Itemized price of one checkout."""

    course: Course
    currency: str
    list_price_cents: int
    base_price_cents: int
    items: List[LineItem]
    bumps_cents: int
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    coupon: Optional[Coupon] = None
    offer: Optional[Offer] = None
    sales_link: Optional[SalesLink] = None

    @property
    def producer_id(self) -> int:
        return self.course.producer_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "course_id": self.course.id,
            "currency": self.currency,
            "list_price_cents": self.list_price_cents,
            "base_price_cents": self.base_price_cents,
            "items": [
                {
                    "kind": item.kind,
                    "reference_id": item.reference_id,
                    "description": item.description,
                    "amount_cents": item.amount_cents,
                }
                for item in self.items
            ],
            "bumps_cents": self.bumps_cents,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "coupon_code": self.coupon.code if self.coupon is not None else None,
            "offer_id": self.offer.id if self.offer is not None else None,
            "sales_link_id": self.sales_link.link_id if self.sales_link is not None else None,
        }


def offer_is_valid(offer: Offer, now: Optional[datetime] = None) -> bool:
    """An offer applies while active, inside its window and below max_uses."""
    now = now or utcnow()
    if not offer.is_active:
        return False
    if offer.valid_from is not None and now < offer.valid_from:
        return False
    if offer.valid_until is not None and now > offer.valid_until:
        return False
    if offer.max_uses is not None and offer.current_uses >= offer.max_uses:
        return False
    return True


def resolve_base_price(source: ProductSource, now: Optional[datetime] = None) -> int:
    if source.sales_link is not None and source.sales_link.custom_price_cents is not None:
        return source.sales_link.custom_price_cents
    if source.offer is not None and offer_is_valid(source.offer, now):
        return source.offer.sale_price_cents
    return source.course.price_cents


def calculate_totals(
    base_price_cents: int, bump_prices: Iterable[int], discount_cents: int
) -> tuple[int, int, int]:
    """
    Combine base price, bumps and discount.

    Returns:
        tuple: (subtotal_cents, applied_discount_cents, total_cents)
    """
    subtotal = base_price_cents + sum(bump_prices)
    discount = max(0, min(discount_cents, subtotal))
    return subtotal, discount, subtotal - discount


class PricingEngine:
    """Builds price quotes for checkouts."""

    def __init__(self, coupon_service: Optional[CouponService] = None):
        self.coupon_service = coupon_service or CouponService()

    async def resolve_source(
        self,
        db: AsyncSession,
        course_id: Optional[int] = None,
        sales_link_id: Optional[str] = None,
        offer_link_id: Optional[str] = None,
    ) -> ProductSource:
        """
        Find the course being bought from exactly one product reference.

        Raises:
            DomainValidationError: If zero or several references are given
            NotFoundError: If the reference does not exist
            ProductUnavailableError: If the course or link is inactive
        """
        given = [ref for ref in (course_id, sales_link_id, offer_link_id) if ref is not None]
        if len(given) != 1:
            raise DomainValidationError(
                "Exactly one of course_id, sales_link_id or offer_link_id is required"
            )

        sales_link = None
        offer = None
        if sales_link_id is not None:
            result = await db.execute(select(SalesLink).where(SalesLink.link_id == sales_link_id))
            sales_link = result.scalar_one_or_none()
            if sales_link is None:
                raise NotFoundError("Sales link", sales_link_id)
            if not sales_link.is_active:
                raise ProductUnavailableError(f"Sales link {sales_link_id} is inactive")
            course_id = sales_link.course_id
        elif offer_link_id is not None:
            result = await db.execute(select(Offer).where(Offer.link_id == offer_link_id))
            offer = result.scalar_one_or_none()
            if offer is None:
                raise NotFoundError("Offer", offer_link_id)
            course_id = offer.course_id

        course = await db.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course", course_id)
        if not course.is_active:
            raise ProductUnavailableError(
                f"Course {course.id} is not available for sale",
                user_message="This product is not available for sale.",
            )

        return ProductSource(course=course, sales_link=sales_link, offer=offer)

    async def _load_bumps(
        self, db: AsyncSession, course_id: int, order_bump_ids: Sequence[int]
    ) -> List[OrderBump]:
        wanted = set(order_bump_ids)
        if not wanted:
            return []

        stmt = (
            select(OrderBump)
            .where(OrderBump.id.in_(wanted))
            .order_by(OrderBump.position, OrderBump.id)
        )
        result = await db.execute(stmt)
        bumps = list(result.scalars().all())

        found = {bump.id for bump in bumps}
        missing = wanted - found
        if missing:
            raise InvalidOrderBumpError(f"Unknown order bumps: {sorted(missing)}")
        for bump in bumps:
            if bump.course_id != course_id or not bump.is_active:
                raise InvalidOrderBumpError(
                    f"Order bump {bump.id} is not offered on course {course_id}"
                )
        return bumps

    async def quote(
        self,
        db: AsyncSession,
        source: ProductSource,
        order_bump_ids: Sequence[int] = (),
        coupon_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PriceQuote:
        """
        Price a checkout.

        An offer link that is no longer valid is priced at the course list
        price and carries no offer reservation.

        Raises:
            InvalidOrderBumpError: If a bump does not belong to the course
            CouponRejectedError: If the coupon cannot be applied
        """
        now = now or utcnow()
        course = source.course

        offer = source.offer
        if offer is not None and not offer_is_valid(offer, now):
            logger.info("offer_expired_using_list_price", offer_id=offer.id, course_id=course.id)
            offer = None

        base_price = resolve_base_price(source, now)
        bumps = await self._load_bumps(db, course.id, order_bump_ids)

        items = [LineItem("product", course.id, course.title, base_price)]
        items.extend(
            LineItem("order_bump", bump.id, bump.title, bump.price_cents) for bump in bumps
        )

        evaluation: Optional[CouponEvaluation] = None
        if coupon_code:
            evaluation = await self.coupon_service.validate(
                db, coupon_code, course.id, base_price, now
            )
            evaluation.raise_if_rejected()

        subtotal, discount, total = calculate_totals(
            base_price,
            (bump.price_cents for bump in bumps),
            evaluation.discount_cents if evaluation is not None else 0,
        )

        quote = PriceQuote(
            course=course,
            currency=course.currency,
            list_price_cents=course.price_cents,
            base_price_cents=base_price,
            items=items,
            bumps_cents=subtotal - base_price,
            subtotal_cents=subtotal,
            discount_cents=discount,
            total_cents=total,
            coupon=evaluation.coupon if evaluation is not None else None,
            offer=offer,
            sales_link=source.sales_link,
        )

        logger.info(
            "price_quoted",
            course_id=course.id,
            base_price_cents=base_price,
            bumps=len(bumps),
            discount_cents=discount,
            total_cents=total,
        )
        return quote


async def reserve_offer(db: AsyncSession, offer_id: int, now: Optional[datetime] = None) -> bool:
    """
    Atomically take one use of an offer.

    Returns:
        bool: False when the offer expired or ran out of uses meanwhile
    """
    now = now or utcnow()
    stmt = (
        update(Offer)
        .where(
            Offer.id == offer_id,
            Offer.is_active.is_(True),
            or_(Offer.valid_from.is_(None), Offer.valid_from <= now),
            or_(Offer.valid_until.is_(None), Offer.valid_until >= now),
            or_(Offer.max_uses.is_(None), Offer.current_uses < Offer.max_uses),
        )
        .values(current_uses=Offer.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def release_offer(db: AsyncSession, offer_id: int) -> None:
    await db.execute(
        update(Offer)
        .where(Offer.id == offer_id, Offer.current_uses > 0)
        .values(current_uses=Offer.current_uses - 1)
        .execution_options(synchronize_session=False)
    )
