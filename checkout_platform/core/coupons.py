"""
Coupon validation and redemption accounting.

A coupon use is reserved with a single conditional UPDATE when a checkout
is created, so concurrent checkouts can never push used_count past
usage_limit. A reservation is released at most once, when the sale is
canceled; the sale row records whether it still holds one.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.core.exceptions import CouponRejectedError
from checkout_platform.core.money import format_cents, percent_of
from checkout_platform.database.models import Coupon, utcnow
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CouponRejection(Enum):
    """Reasons a coupon cannot be applied, in the order they are checked."""

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    WRONG_PRODUCT = "wrong_product"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    BELOW_MINIMUM = "below_minimum"


REJECTION_MESSAGES = {
    CouponRejection.NOT_FOUND: "Coupon not found",
    CouponRejection.INACTIVE: "Coupon is inactive",
    CouponRejection.WRONG_PRODUCT: "Coupon is not valid for this product",
    CouponRejection.NOT_YET_VALID: "Coupon is not valid yet",
    CouponRejection.EXPIRED: "Coupon has expired",
    CouponRejection.EXHAUSTED: "Coupon usage limit reached",
    CouponRejection.BELOW_MINIMUM: "Order value is below the coupon minimum",
}


@dataclass(frozen=True)
class CouponEvaluation:
    """Outcome of checking a coupon against an order value."""

    coupon: Optional[Coupon]
    discount_cents: int = 0
    rejection: Optional[CouponRejection] = None
    message: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.rejection is None

    def raise_if_rejected(self) -> None:
        if self.rejection is not None:
            raise CouponRejectedError(self.rejection.value, self.message or "Invalid coupon")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "coupon_id": self.coupon.id if self.coupon is not None else None,
            "code": self.coupon.code if self.coupon is not None else None,
            "discount_cents": self.discount_cents,
            "reason": self.rejection.value if self.rejection else None,
            "message": self.message,
        }


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _reject(
    coupon: Optional[Coupon], reason: CouponRejection, message: Optional[str] = None
) -> CouponEvaluation:
    return CouponEvaluation(
        coupon=coupon, rejection=reason, message=message or REJECTION_MESSAGES[reason]
    )


def calculate_discount(coupon: Coupon, order_value_cents: int) -> int:
    """
    Discount a coupon grants on an order value.

    Percentage discounts round half up to the cent and respect
    max_discount_cents. The discount never exceeds the order value.
    """
    if coupon.discount_type == "percentage":
        discount = percent_of(order_value_cents, coupon.percent_off or 0, ROUND_HALF_UP)
        if coupon.max_discount_cents is not None:
            discount = min(discount, coupon.max_discount_cents)
    else:
        discount = coupon.amount_off_cents or 0
    return max(0, min(discount, order_value_cents))


def evaluate_coupon(
    coupon: Optional[Coupon],
    course_id: int,
    order_value_cents: int,
    now: Optional[datetime] = None,
) -> CouponEvaluation:
    """
    Validate a coupon for a course and order value.

    Args:
        coupon: Coupon row, or None when the code does not exist
        course_id: Course being bought
        order_value_cents: Value the discount applies to
        now: Evaluation time (naive UTC)

    Returns:
        CouponEvaluation: discount or the first rejection reason
    """
    now = now or utcnow()

    if coupon is None:
        return _reject(None, CouponRejection.NOT_FOUND)
    if not coupon.is_active:
        return _reject(coupon, CouponRejection.INACTIVE)
    if coupon.course_id != course_id:
        return _reject(coupon, CouponRejection.WRONG_PRODUCT)
    if coupon.valid_from is not None and now < coupon.valid_from:
        return _reject(coupon, CouponRejection.NOT_YET_VALID)
    if coupon.valid_until is not None and now > coupon.valid_until:
        return _reject(coupon, CouponRejection.EXPIRED)
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        return _reject(coupon, CouponRejection.EXHAUSTED)
    if coupon.min_order_cents is not None and order_value_cents < coupon.min_order_cents:
        return _reject(
            coupon,
            CouponRejection.BELOW_MINIMUM,
            f"Minimum order value is {format_cents(coupon.min_order_cents)}",
        )

    return CouponEvaluation(
        coupon=coupon, discount_cents=calculate_discount(coupon, order_value_cents)
    )


class CouponService:
    """Coupon lookups, validation and usage accounting."""

    async def find_by_code(self, db: AsyncSession, code: str) -> Optional[Coupon]:
        stmt = select(Coupon).where(Coupon.code == normalize_code(code))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def validate(
        self,
        db: AsyncSession,
        code: str,
        course_id: int,
        order_value_cents: int,
        now: Optional[datetime] = None,
    ) -> CouponEvaluation:
        """Look up a coupon code and evaluate it for an order."""
        coupon = await self.find_by_code(db, code)
        evaluation = evaluate_coupon(coupon, course_id, order_value_cents, now)

        logger.info(
            "coupon_evaluated",
            code=normalize_code(code),
            course_id=course_id,
            valid=evaluation.valid,
            reason=evaluation.rejection.value if evaluation.rejection else None,
            discount_cents=evaluation.discount_cents,
        )
        return evaluation

    async def reserve(self, db: AsyncSession, coupon_id: int) -> bool:
        """
        Atomically take one use of a coupon.

        Returns:
            bool: False when the coupon is inactive or already exhausted
        """
        stmt = (
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                Coupon.is_active.is_(True),
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        reserved = result.rowcount == 1

        metrics.record_coupon_redemption("reserved" if reserved else "exhausted")
        logger.info("coupon_reservation", coupon_id=coupon_id, reserved=reserved)
        return reserved

    async def release(self, db: AsyncSession, coupon_id: int) -> None:
        """Give back one use of a coupon."""
        stmt = (
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.used_count > 0)
            .values(used_count=Coupon.used_count - 1)
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

        metrics.record_coupon_redemption("released")
        logger.info("coupon_reservation_released", coupon_id=coupon_id)
