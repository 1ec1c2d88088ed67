"""Builders for the records tests start from."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.core.splits import SplitParticipant, calculate_splits
from checkout_platform.database.models import (
    Course,
    CourseAffiliate,
    CourseCoProducer,
    Sale,
    SaleSplit,
    User,
    utcnow,
)


async def make_user(
    db: AsyncSession,
    email: str,
    kyc_status: str = "approved",
    role: str = "user",
    name: Optional[str] = None,
) -> User:
    user = User(
        email=email,
        name=name or email.split("@")[0],
        role=role,
        kyc_status=kyc_status,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user


async def make_course(
    db: AsyncSession,
    producer: User,
    price_cents: int = 10000,
    title: str = "Async Python",
    allows_affiliates: bool = True,
    default_affiliate_commission: Decimal = Decimal("30"),
) -> Course:
    course = Course(
        producer_id=producer.id,
        title=title,
        slug=f"{title.lower().replace(' ', '-')}-{producer.id}",
        price_cents=price_cents,
        currency="USD",
        is_active=True,
        allows_affiliates=allows_affiliates,
        default_affiliate_commission=default_affiliate_commission,
    )
    db.add(course)
    await db.flush()
    return course


async def add_co_producer(
    db: AsyncSession, course: Course, user: User, percentage: str
) -> CourseCoProducer:
    co_producer = CourseCoProducer(
        course_id=course.id, user_id=user.id, percentage=Decimal(percentage), is_active=True
    )
    db.add(co_producer)
    await db.flush()
    return co_producer


async def add_affiliate(
    db: AsyncSession, course: Course, user: User, percentage: str
) -> CourseAffiliate:
    affiliate = CourseAffiliate(
        course_id=course.id,
        user_id=user.id,
        commission_percentage=Decimal(percentage),
        is_active=True,
    )
    db.add(affiliate)
    await db.flush()
    return affiliate


async def make_sale(
    db: AsyncSession,
    course: Course,
    amount_cents: int = 10000,
    status: str = "pending",
    payment_intent_id: Optional[str] = None,
    affiliate: Optional[User] = None,
    affiliate_percentage: str = "30",
    affiliate_link_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
    with_splits: bool = True,
    split_status: str = "pending",
) -> Sale:
    """A sale with a 10% platform fee and an optional affiliate share."""
    plan = calculate_splits(
        total_cents=amount_cents,
        producer_id=course.producer_id,
        platform_fee_percentage=Decimal("10"),
        affiliate=(
            SplitParticipant(affiliate.id, Decimal(affiliate_percentage))
            if affiliate is not None
            else None
        ),
    )
    now = created_at or utcnow()
    sale = Sale(
        course_id=course.id,
        producer_id=course.producer_id,
        buyer_email="buyer@example.com",
        payment_method="card",
        currency="USD",
        list_price_cents=amount_cents,
        base_price_cents=amount_cents,
        bumps_cents=0,
        subtotal_cents=amount_cents,
        discount_cents=0,
        amount_cents=amount_cents,
        platform_fee_cents=plan.platform_fee_cents,
        commission_cents=plan.affiliate_cents,
        affiliate_id=plan.affiliate_id,
        affiliate_link_id=affiliate_link_id,
        status=status,
        payment_intent_id=payment_intent_id,
        idempotency_key=f"checkout:test:{uuid.uuid4().hex}",
        created_at=now,
        updated_at=now,
    )
    db.add(sale)
    await db.flush()

    if with_splits:
        for line in plan.lines:
            db.add(
                SaleSplit(
                    sale_id=sale.id,
                    party=line.party,
                    user_id=line.user_id,
                    percentage=line.percentage,
                    amount_cents=line.amount_cents,
                    status=split_status,
                )
            )
        await db.flush()
    return sale
