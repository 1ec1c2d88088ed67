"""
Catalog and collaborator management.

Users and their KYC status, courses, co-producers, affiliates and
affiliate applications, order bumps, coupons, sales links, offers and
producer webhook subscriptions. These are the records the pricing, split
and settlement code reads.
"""
import re
import secrets
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.config import get_settings
from checkout_platform.core.attribution import generate_link_id
from checkout_platform.core.coupons import normalize_code
from checkout_platform.core.exceptions import (
    ConflictError,
    DomainValidationError,
    NotFoundError,
    PermissionDeniedError,
    ProducerNotVerifiedError,
)
from checkout_platform.core.money import to_percentage
from checkout_platform.database.models import (
    AffiliateApplication,
    Coupon,
    Course,
    CourseAffiliate,
    CourseCoProducer,
    Notification,
    Offer,
    OrderBump,
    SalesLink,
    User,
    Webhook,
    utcnow,
)
from checkout_platform.integrations.notification_sink import WEBHOOK_EVENTS

logger = structlog.get_logger(__name__)

KYC_STATUSES = ("pending", "approved", "rejected")
DISCOUNT_TYPES = ("percentage", "fixed")


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug or "course"


def is_admin(user: User) -> bool:
    return user.role == "admin"


def require_verified(user: User) -> None:
    """
    Raises:
        ProducerNotVerifiedError: If the user may not sell
    """
    if not user.is_verified:
        raise ProducerNotVerifiedError(user.id, user.kyc_status)


class CatalogService:
    """CRUD for the records checkouts are priced and split from."""

    def __init__(self) -> None:
        self.settings = get_settings()

    # Users

    async def create_user(
        self, db: AsyncSession, email: str, name: str, role: str = "user"
    ) -> User:
        email = email.strip().lower()
        result = await db.execute(select(User).where(User.email == email))
        if result.scalar_one_or_none() is not None:
            raise ConflictError(f"User {email} already exists", error_code="email_taken")

        user = User(email=email, name=name, role=role, kyc_status="pending", is_active=True)
        db.add(user)
        await db.flush()
        logger.info("user_created", user_id=user.id, role=role)
        return user

    async def get_user(self, db: AsyncSession, user_id: int) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def set_kyc_status(
        self,
        db: AsyncSession,
        admin: User,
        user_id: int,
        status: str,
        reason: Optional[str] = None,
    ) -> User:
        """
        Approve or reject a user's identity verification.

        Raises:
            PermissionDeniedError: If the caller is not an admin
            DomainValidationError: On an unknown status or a rejection without reason
        """
        if not is_admin(admin):
            raise PermissionDeniedError("Only admins can review KYC")
        if status not in KYC_STATUSES:
            raise DomainValidationError(f"Unknown KYC status: {status}")
        if status == "rejected" and not reason:
            raise DomainValidationError("A rejection reason is required")

        user = await self.get_user(db, user_id)
        previous = user.kyc_status
        user.kyc_status = status
        user.kyc_rejection_reason = reason if status == "rejected" else None
        user.updated_at = utcnow()
        await db.flush()

        logger.info(
            "kyc_status_updated",
            user_id=user_id,
            from_status=previous,
            to_status=status,
            admin_id=admin.id,
        )
        return user

    # Courses

    async def _unique_slug(self, db: AsyncSession, title: str) -> str:
        base = slugify(title)
        slug = base
        suffix = 1
        while True:
            result = await db.execute(select(Course.id).where(Course.slug == slug))
            if result.scalar_one_or_none() is None:
                return slug
            suffix += 1
            slug = f"{base}-{suffix}"

    async def create_course(
        self,
        db: AsyncSession,
        producer: User,
        title: str,
        price_cents: int,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        allows_affiliates: bool = False,
        default_affiliate_commission: Decimal = Decimal("0"),
    ) -> Course:
        """
        Create a course owned by the caller.

        Raises:
            ProducerNotVerifiedError: If the producer's KYC is not approved
        """
        require_verified(producer)
        if price_cents < 0:
            raise DomainValidationError("Price cannot be negative")
        commission = to_percentage(default_affiliate_commission)
        if not Decimal("0") <= commission <= Decimal("100"):
            raise DomainValidationError("Commission must be between 0 and 100")

        course = Course(
            producer_id=producer.id,
            title=title,
            slug=await self._unique_slug(db, title),
            description=description,
            price_cents=price_cents,
            currency=(currency or self.settings.default_currency).upper(),
            is_active=True,
            allows_affiliates=allows_affiliates,
            default_affiliate_commission=commission,
        )
        db.add(course)
        await db.flush()

        logger.info("course_created", course_id=course.id, producer_id=producer.id)
        return course

    async def require_course_owner(self, db: AsyncSession, course_id: int, user: User) -> Course:
        """
        Load a course the caller may manage.

        Raises:
            NotFoundError: If the course does not exist
            PermissionDeniedError: If the caller is neither its producer nor an admin
        """
        course = await db.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course", course_id)
        if course.producer_id != user.id and not is_admin(user):
            raise PermissionDeniedError(
                f"User {user.id} does not own course {course_id}",
                user_message="You do not manage this product.",
            )
        return course

    # Co-producers

    async def add_co_producer(
        self,
        db: AsyncSession,
        owner: User,
        course_id: int,
        user_id: int,
        percentage: Decimal,
    ) -> CourseCoProducer:
        """
        Add a co-producer with a share of every sale.

        Raises:
            DomainValidationError: If the shares would leave nothing for the producer
            ConflictError: If the user already co-produces the course
        """
        course = await self.require_course_owner(db, course_id, owner)
        percentage = to_percentage(percentage)
        if percentage <= 0:
            raise DomainValidationError("Co-producer percentage must be positive")
        if user_id == course.producer_id:
            raise DomainValidationError("The producer cannot be their own co-producer")
        await self.get_user(db, user_id)

        result = await db.execute(
            select(CourseCoProducer).where(
                CourseCoProducer.course_id == course_id,
                CourseCoProducer.user_id == user_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None and existing.is_active:
            raise ConflictError(f"User {user_id} already co-produces course {course_id}")

        total = await db.execute(
            select(func.coalesce(func.sum(CourseCoProducer.percentage), 0)).where(
                CourseCoProducer.course_id == course_id,
                CourseCoProducer.is_active.is_(True),
            )
        )
        allocated = to_percentage(total.scalar_one())
        if allocated + percentage + self.settings.platform_fee_percentage > 100:
            raise DomainValidationError(
                f"Co-producer shares of {allocated + percentage}% plus the "
                f"{self.settings.platform_fee_percentage}% platform fee exceed 100%",
                error_code="split_over_allocated",
            )

        if existing is not None:
            existing.percentage = percentage
            existing.is_active = True
            co_producer = existing
        else:
            co_producer = CourseCoProducer(
                course_id=course_id, user_id=user_id, percentage=percentage, is_active=True
            )
            db.add(co_producer)
        await db.flush()

        logger.info(
            "co_producer_added",
            course_id=course_id,
            user_id=user_id,
            percentage=str(percentage),
        )
        return co_producer

    async def remove_co_producer(
        self, db: AsyncSession, owner: User, course_id: int, co_producer_id: int
    ) -> CourseCoProducer:
        await self.require_course_owner(db, course_id, owner)
        co_producer = await db.get(CourseCoProducer, co_producer_id)
        if co_producer is None or co_producer.course_id != course_id:
            raise NotFoundError("Co-producer", co_producer_id)
        co_producer.is_active = False
        await db.flush()
        logger.info("co_producer_removed", course_id=course_id, user_id=co_producer.user_id)
        return co_producer

    # Affiliates

    async def add_affiliate(
        self,
        db: AsyncSession,
        owner: User,
        course_id: int,
        user_id: int,
        commission_percentage: Optional[Decimal] = None,
    ) -> CourseAffiliate:
        course = await self.require_course_owner(db, course_id, owner)
        return await self._enroll_affiliate(db, course, user_id, commission_percentage)

    async def _enroll_affiliate(
        self,
        db: AsyncSession,
        course: Course,
        user_id: int,
        commission_percentage: Optional[Decimal] = None,
    ) -> CourseAffiliate:
        if user_id == course.producer_id:
            raise DomainValidationError("The producer cannot be an affiliate of their course")
        await self.get_user(db, user_id)

        commission = to_percentage(
            commission_percentage
            if commission_percentage is not None
            else course.default_affiliate_commission
        )
        if not Decimal("0") <= commission <= Decimal("100"):
            raise DomainValidationError("Commission must be between 0 and 100")

        result = await db.execute(
            select(CourseAffiliate).where(
                CourseAffiliate.course_id == course.id,
                CourseAffiliate.user_id == user_id,
            )
        )
        affiliate = result.scalar_one_or_none()
        if affiliate is not None and affiliate.is_active:
            raise ConflictError(f"User {user_id} is already an affiliate of course {course.id}")

        if affiliate is not None:
            affiliate.commission_percentage = commission
            affiliate.is_active = True
        else:
            affiliate = CourseAffiliate(
                course_id=course.id,
                user_id=user_id,
                commission_percentage=commission,
                is_active=True,
            )
            db.add(affiliate)
        await db.flush()

        logger.info(
            "affiliate_added",
            course_id=course.id,
            user_id=user_id,
            commission=str(commission),
        )
        return affiliate

    async def apply_for_affiliation(
        self, db: AsyncSession, user: User, course_id: int, message: Optional[str] = None
    ) -> AffiliateApplication:
        course = await db.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course", course_id)
        if not course.allows_affiliates:
            raise DomainValidationError(
                f"Course {course_id} does not accept affiliates",
                error_code="affiliates_disabled",
            )
        if course.producer_id == user.id:
            raise DomainValidationError("The producer cannot be an affiliate of their course")

        result = await db.execute(
            select(AffiliateApplication).where(
                AffiliateApplication.course_id == course_id,
                AffiliateApplication.user_id == user.id,
                AffiliateApplication.status.in_(("pending", "approved")),
            )
        )
        if result.scalars().first() is not None:
            raise ConflictError(f"User {user.id} already applied to course {course_id}")

        application = AffiliateApplication(
            course_id=course_id, user_id=user.id, message=message, status="pending"
        )
        db.add(application)
        await db.flush()
        logger.info("affiliate_application_created", course_id=course_id, user_id=user.id)
        return application

    async def _pending_application(
        self, db: AsyncSession, reviewer: User, application_id: int
    ) -> AffiliateApplication:
        application = await db.get(AffiliateApplication, application_id)
        if application is None:
            raise NotFoundError("Affiliate application", application_id)
        await self.require_course_owner(db, application.course_id, reviewer)
        if application.status != "pending":
            raise ConflictError(
                f"Application {application_id} was already {application.status}"
            )
        return application

    async def approve_application(
        self, db: AsyncSession, reviewer: User, application_id: int
    ) -> CourseAffiliate:
        """Approve an application, enrolling the user at the default commission."""
        application = await self._pending_application(db, reviewer, application_id)
        course = await db.get(Course, application.course_id)
        affiliate = await self._enroll_affiliate(db, course, application.user_id)
        application.status = "approved"
        application.reviewed_at = utcnow()
        await db.flush()
        logger.info("affiliate_application_approved", application_id=application_id)
        return affiliate

    async def reject_application(
        self, db: AsyncSession, reviewer: User, application_id: int
    ) -> AffiliateApplication:
        application = await self._pending_application(db, reviewer, application_id)
        application.status = "rejected"
        application.reviewed_at = utcnow()
        await db.flush()
        logger.info("affiliate_application_rejected", application_id=application_id)
        return application

    # Order bumps

    async def create_order_bump(
        self,
        db: AsyncSession,
        owner: User,
        course_id: int,
        title: str,
        price_cents: int,
        description: Optional[str] = None,
        position: int = 0,
    ) -> OrderBump:
        await self.require_course_owner(db, course_id, owner)
        if price_cents <= 0:
            raise DomainValidationError("Order bump price must be positive")
        bump = OrderBump(
            course_id=course_id,
            title=title,
            description=description,
            price_cents=price_cents,
            position=position,
            is_active=True,
        )
        db.add(bump)
        await db.flush()
        logger.info("order_bump_created", course_id=course_id, order_bump_id=bump.id)
        return bump

    async def list_order_bumps(self, db: AsyncSession, course_id: int) -> List[OrderBump]:
        stmt = (
            select(OrderBump)
            .where(OrderBump.course_id == course_id, OrderBump.is_active.is_(True))
            .order_by(OrderBump.position, OrderBump.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # Coupons

    async def create_coupon(
        self,
        db: AsyncSession,
        owner: User,
        course_id: int,
        code: str,
        discount_type: str,
        percent_off: Optional[Decimal] = None,
        amount_off_cents: Optional[int] = None,
        min_order_cents: Optional[int] = None,
        max_discount_cents: Optional[int] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
    ) -> Coupon:
        """
        Create a coupon bound to one course.

        Raises:
            DomainValidationError: If the discount definition is inconsistent
            ConflictError: If the code is taken
        """
        await self.require_course_owner(db, course_id, owner)

        code = normalize_code(code)
        if not code:
            raise DomainValidationError("Coupon code is required")
        if discount_type not in DISCOUNT_TYPES:
            raise DomainValidationError(f"Unknown discount type: {discount_type}")
        if discount_type == "percentage":
            if percent_off is None or not Decimal("0") < to_percentage(percent_off) <= 100:
                raise DomainValidationError("percent_off must be in (0, 100]")
            percent_off = to_percentage(percent_off)
            amount_off_cents = None
        else:
            if amount_off_cents is None or amount_off_cents <= 0:
                raise DomainValidationError("amount_off_cents must be positive")
            percent_off = None
        if valid_from and valid_until and valid_until <= valid_from:
            raise DomainValidationError("valid_until must be after valid_from")
        if usage_limit is not None and usage_limit < 1:
            raise DomainValidationError("usage_limit must be at least 1")

        result = await db.execute(select(Coupon.id).where(Coupon.code == code))
        if result.scalar_one_or_none() is not None:
            raise ConflictError(f"Coupon {code} already exists", error_code="coupon_code_taken")

        coupon = Coupon(
            code=code,
            course_id=course_id,
            discount_type=discount_type,
            percent_off=percent_off,
            amount_off_cents=amount_off_cents,
            min_order_cents=min_order_cents,
            max_discount_cents=max_discount_cents,
            valid_from=valid_from,
            valid_until=valid_until,
            usage_limit=usage_limit,
            used_count=0,
            is_active=True,
        )
        db.add(coupon)
        await db.flush()
        logger.info("coupon_created", coupon_id=coupon.id, course_id=course_id, code=code)
        return coupon

    # Checkout links

    async def create_sales_link(
        self,
        db: AsyncSession,
        owner: User,
        course_id: int,
        title: Optional[str] = None,
        custom_price_cents: Optional[int] = None,
    ) -> SalesLink:
        await self.require_course_owner(db, course_id, owner)
        require_verified(owner)
        if custom_price_cents is not None and custom_price_cents < 0:
            raise DomainValidationError("Price cannot be negative")

        link = SalesLink(
            link_id=generate_link_id(),
            course_id=course_id,
            title=title,
            custom_price_cents=custom_price_cents,
            is_active=True,
        )
        db.add(link)
        await db.flush()
        logger.info("sales_link_created", course_id=course_id, link_id=link.link_id)
        return link

    async def create_offer(
        self,
        db: AsyncSession,
        owner: User,
        course_id: int,
        title: str,
        sale_price_cents: int,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        max_uses: Optional[int] = None,
    ) -> Offer:
        await self.require_course_owner(db, course_id, owner)
        require_verified(owner)
        if sale_price_cents < 0:
            raise DomainValidationError("Price cannot be negative")
        if valid_from and valid_until and valid_until <= valid_from:
            raise DomainValidationError("valid_until must be after valid_from")
        if max_uses is not None and max_uses < 1:
            raise DomainValidationError("max_uses must be at least 1")

        offer = Offer(
            link_id=generate_link_id(),
            course_id=course_id,
            title=title,
            sale_price_cents=sale_price_cents,
            valid_from=valid_from,
            valid_until=valid_until,
            max_uses=max_uses,
            current_uses=0,
            is_active=True,
        )
        db.add(offer)
        await db.flush()
        logger.info("offer_created", course_id=course_id, link_id=offer.link_id)
        return offer

    # Producer webhooks

    async def create_webhook_subscription(
        self, db: AsyncSession, user: User, url: str, events: Sequence[str]
    ) -> Webhook:
        unknown = sorted(set(events) - set(WEBHOOK_EVENTS))
        if not events or unknown:
            raise DomainValidationError(
                f"Unknown webhook events: {unknown}" if unknown else "No events selected"
            )
        if not url.startswith(("https://", "http://")):
            raise DomainValidationError("Webhook URL must be http(s)")

        webhook = Webhook(
            user_id=user.id,
            url=url,
            events=sorted(set(events)),
            secret=secrets.token_hex(32),
            is_active=True,
        )
        db.add(webhook)
        await db.flush()
        logger.info("webhook_subscription_created", user_id=user.id, webhook_id=webhook.id)
        return webhook

    # Notifications

    async def list_notifications(
        self, db: AsyncSession, user: User, unread_only: bool = False, limit: int = 50
    ) -> List[Notification]:
        stmt = select(Notification).where(Notification.user_id == user.id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        result = await db.execute(stmt)
        return list(result.scalars().all())
