"""
Session-based last-touch affiliate attribution.

Every click on an affiliate link is stored with the visitor's session id.
At checkout the most recent click for (course, session) inside the
attribution window wins; ties on the timestamp go to the later click id.
If the winning affiliate is no longer an active affiliate of the course
the sale is not attributed to anyone.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.config import get_settings
from checkout_platform.core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ProductUnavailableError,
)
from checkout_platform.database.models import (
    AffiliateLink,
    AffiliateLinkClick,
    Course,
    CourseAffiliate,
    utcnow,
)
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

LINK_ID_BYTES = 8  # 11 url-safe characters


@dataclass(frozen=True)
class Attribution:
    affiliate_id: int
    affiliate_link_id: int
    click_id: int
    commission_percentage: Decimal


def generate_link_id() -> str:
    return secrets.token_urlsafe(LINK_ID_BYTES)


class AttributionService:
    """Affiliate links, click tracking and last-touch resolution."""

    def __init__(self, window_days: Optional[int] = None):
        self.window_days = window_days or get_settings().attribution_window_days

    async def _active_affiliation(
        self, db: AsyncSession, course_id: int, user_id: int
    ) -> Optional[CourseAffiliate]:
        stmt = select(CourseAffiliate).where(
            CourseAffiliate.course_id == course_id,
            CourseAffiliate.user_id == user_id,
            CourseAffiliate.is_active.is_(True),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def generate_link(
        self, db: AsyncSession, affiliate_id: int, course_id: int
    ) -> AffiliateLink:
        """
        Get or create the tracking link of an affiliate for a course.

        Raises:
            NotFoundError: If the course does not exist
            PermissionDeniedError: If the user is not an active affiliate
        """
        course = await db.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course", course_id)

        if await self._active_affiliation(db, course_id, affiliate_id) is None:
            raise PermissionDeniedError(
                f"User {affiliate_id} is not an affiliate of course {course_id}",
                user_message="You are not an affiliate of this product.",
            )

        stmt = select(AffiliateLink).where(
            AffiliateLink.course_id == course_id,
            AffiliateLink.affiliate_id == affiliate_id,
        )
        result = await db.execute(stmt)
        link = result.scalar_one_or_none()
        if link is not None:
            return link

        link = AffiliateLink(
            link_id=generate_link_id(),
            course_id=course_id,
            affiliate_id=affiliate_id,
            clicks=0,
            sales=0,
            earnings_cents=0,
            is_active=True,
            created_at=utcnow(),
        )
        db.add(link)
        await db.flush()

        logger.info(
            "affiliate_link_created",
            link_id=link.link_id,
            course_id=course_id,
            affiliate_id=affiliate_id,
        )
        return link

    async def record_click(
        self,
        db: AsyncSession,
        link_id: str,
        session_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        clicked_at: Optional[datetime] = None,
    ) -> AffiliateLinkClick:
        """
        Store a click on an affiliate link and bump its click counter.

        Raises:
            NotFoundError: If the link does not exist
            ProductUnavailableError: If the link has been deactivated
        """
        result = await db.execute(select(AffiliateLink).where(AffiliateLink.link_id == link_id))
        link = result.scalar_one_or_none()
        if link is None:
            raise NotFoundError("Affiliate link", link_id)
        if not link.is_active:
            raise ProductUnavailableError(f"Affiliate link {link_id} is inactive")

        click = AffiliateLinkClick(
            affiliate_link_id=link.id,
            affiliate_id=link.affiliate_id,
            course_id=link.course_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            clicked_at=clicked_at or utcnow(),
        )
        db.add(click)
        await db.execute(
            update(AffiliateLink)
            .where(AffiliateLink.id == link.id)
            .values(clicks=AffiliateLink.clicks + 1)
            .execution_options(synchronize_session=False)
        )
        await db.flush()

        metrics.record_affiliate_click()
        logger.info(
            "affiliate_click_recorded",
            link_id=link_id,
            affiliate_id=link.affiliate_id,
            course_id=link.course_id,
            session_id=session_id,
        )
        return click

    async def resolve(
        self,
        db: AsyncSession,
        course_id: int,
        session_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Attribution]:
        """
        Find the affiliate credited for a purchase.

        Args:
            db: Database session
            course_id: Course being bought
            session_id: Buyer's attribution session
            now: Purchase time (naive UTC)

        Returns:
            Optional[Attribution]: None when no eligible click exists
        """
        if not session_id:
            return None

        now = now or utcnow()
        window_start = now - timedelta(days=self.window_days)

        stmt = (
            select(AffiliateLinkClick)
            .where(
                AffiliateLinkClick.course_id == course_id,
                AffiliateLinkClick.session_id == session_id,
                AffiliateLinkClick.clicked_at >= window_start,
                AffiliateLinkClick.clicked_at <= now,
            )
            .order_by(AffiliateLinkClick.clicked_at.desc(), AffiliateLinkClick.id.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        click = result.scalar_one_or_none()
        if click is None:
            return None

        affiliation = await self._active_affiliation(db, course_id, click.affiliate_id)
        if affiliation is None:
            logger.info(
                "attribution_affiliate_inactive",
                course_id=course_id,
                affiliate_id=click.affiliate_id,
                click_id=click.id,
            )
            return None

        logger.info(
            "attribution_resolved",
            course_id=course_id,
            affiliate_id=click.affiliate_id,
            click_id=click.id,
        )
        return Attribution(
            affiliate_id=click.affiliate_id,
            affiliate_link_id=click.affiliate_link_id,
            click_id=click.id,
            commission_percentage=affiliation.commission_percentage,
        )
