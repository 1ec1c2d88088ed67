"""
Sale settlement state machine.

The processor reports payment status asynchronously, possibly more than
once and out of order. Every status change goes through apply(), which
only performs allowed transitions:

    pending   -> succeeded | failed | canceled
    failed    -> succeeded | canceled
    succeeded -> refunded

Repeating the current status is a no-op and any other transition is
treated as stale and ignored, so replayed or reordered events cannot move
money twice.
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.core.coupons import CouponService
from checkout_platform.core.exceptions import DomainValidationError, NotFoundError
from checkout_platform.core.idempotency import IdempotencyManager
from checkout_platform.core.money import format_cents
from checkout_platform.core.outbox import write_outbox_event
from checkout_platform.core.pricing import release_offer
from checkout_platform.database.models import (
    AffiliateLink,
    Course,
    DailyAnalytics,
    Notification,
    Sale,
    SaleEvent,
    SaleSplit,
    utcnow,
)
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELED = "canceled"
REFUNDED = "refunded"

SALE_STATUSES = (PENDING, SUCCEEDED, FAILED, CANCELED, REFUNDED)

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    PENDING: frozenset({SUCCEEDED, FAILED, CANCELED}),
    FAILED: frozenset({SUCCEEDED, CANCELED}),
    SUCCEEDED: frozenset({REFUNDED}),
    CANCELED: frozenset(),
    REFUNDED: frozenset(),
}


@dataclass(frozen=True)
class TransitionResult:
    sale_id: int
    from_status: str
    to_status: str
    applied: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sale_id": self.sale_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "applied": self.applied,
            "reason": self.reason,
        }


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def record_sale_event(
    db: AsyncSession,
    sale_id: int,
    event_type: str,
    event_data: Dict[str, Any],
    correlation_id: Optional[str] = None,
) -> SaleEvent:
    """Append an entry to a sale's audit trail."""
    event = SaleEvent(
        sale_id=sale_id,
        event_type=event_type,
        event_data=event_data,
        correlation_id=correlation_id or str(uuid.uuid4()),
        created_at=utcnow(),
    )
    db.add(event)
    return event


def sale_payload(sale: Sale, splits: Optional[List[SaleSplit]] = None) -> Dict[str, Any]:
    """Serializable summary of a sale for outbox events."""
    payload: Dict[str, Any] = {
        "sale_id": sale.id,
        "course_id": sale.course_id,
        "producer_id": sale.producer_id,
        "affiliate_id": sale.affiliate_id,
        "buyer_email": sale.buyer_email,
        "currency": sale.currency,
        "amount_cents": sale.amount_cents,
        "discount_cents": sale.discount_cents,
        "platform_fee_cents": sale.platform_fee_cents,
        "commission_cents": sale.commission_cents,
        "payment_method": sale.payment_method,
        "payment_intent_id": sale.payment_intent_id,
        "status": sale.status,
        "created_at": sale.created_at.isoformat() if sale.created_at else None,
    }
    if splits is not None:
        payload["splits"] = [
            {"party": split.party, "user_id": split.user_id, "amount_cents": split.amount_cents}
            for split in splits
        ]
    return payload


class SettlementEngine:
    """Applies processor and manual status updates to sales."""

    def __init__(
        self,
        coupon_service: Optional[CouponService] = None,
        idempotency_manager: Optional[IdempotencyManager] = None,
    ):
        self.coupon_service = coupon_service or CouponService()
        self.idempotency_manager = idempotency_manager or IdempotencyManager()

    async def load_sale(self, db: AsyncSession, sale_id: int) -> Sale:
        """
        Load a sale and lock its row for the rest of the transaction.

        Raises:
            NotFoundError: If the sale does not exist
        """
        stmt = (
            select(Sale)
            .where(Sale.id == sale_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        sale = result.scalar_one_or_none()
        if sale is None:
            raise NotFoundError("Sale", sale_id)
        return sale

    async def find_by_payment_intent(
        self, db: AsyncSession, payment_intent_id: str
    ) -> Optional[Sale]:
        stmt = (
            select(Sale)
            .where(Sale.payment_intent_id == payment_intent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def apply_for_payment_intent(
        self,
        db: AsyncSession,
        payment_intent_id: str,
        new_status: str,
        source: str,
        error_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[TransitionResult]:
        """Apply a status to the sale behind a processor payment intent."""
        sale = await self.find_by_payment_intent(db, payment_intent_id)
        if sale is None:
            logger.warning(
                "payment_intent_not_found_in_db",
                payment_intent_id=payment_intent_id,
                status=new_status,
            )
            return None
        return await self.apply(
            db,
            sale,
            new_status,
            source=source,
            error_message=error_message,
            correlation_id=correlation_id,
        )

    async def apply(
        self,
        db: AsyncSession,
        sale: Sale,
        new_status: str,
        source: str,
        error_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Move a sale to a new status and run the side effects of the transition.

        Args:
            db: Database session (the caller commits)
            sale: Sale to update
            new_status: Target status
            source: Who reported the status (webhook, manual, reconciliation, ...)
            error_message: Failure reason for failed payments
            correlation_id: Correlation ID for the audit trail
            now: Transition time (naive UTC)

        Returns:
            TransitionResult: applied is False for no-op and stale updates

        Raises:
            DomainValidationError: If new_status is not a sale status
        """
        if new_status not in SALE_STATUSES:
            raise DomainValidationError(f"Unknown sale status: {new_status}")

        old_status = sale.status
        if old_status == new_status:
            metrics.record_settlement(old_status, new_status, False)
            return TransitionResult(sale.id, old_status, new_status, False, "unchanged")

        if not can_transition(old_status, new_status):
            logger.warning(
                "sale_transition_ignored",
                sale_id=sale.id,
                from_status=old_status,
                to_status=new_status,
                source=source,
            )
            metrics.record_settlement(old_status, new_status, False)
            return TransitionResult(sale.id, old_status, new_status, False, "stale")

        now = now or utcnow()
        correlation_id = correlation_id or str(uuid.uuid4())
        cached_key = sale.idempotency_key
        sale.status = new_status
        sale.updated_at = now

        if new_status == SUCCEEDED:
            await self._on_succeeded(db, sale, now, correlation_id)
        elif new_status == FAILED:
            sale.error_message = error_message or "Payment failed"
            write_outbox_event(db, sale.id, "sale", "sale.failed", sale_payload(sale))
        elif new_status == CANCELED:
            await self._on_canceled(db, sale, now)
        elif new_status == REFUNDED:
            await self._on_refunded(db, sale, now)

        # A replayed checkout must not report the old status
        await self.idempotency_manager.invalidate(cached_key)

        record_sale_event(
            db,
            sale.id,
            f"sale.{new_status}",
            {
                "from_status": old_status,
                "to_status": new_status,
                "source": source,
                "error": error_message,
            },
            correlation_id,
        )
        await db.flush()

        metrics.record_settlement(old_status, new_status, True)
        logger.info(
            "sale_status_applied",
            sale_id=sale.id,
            from_status=old_status,
            to_status=new_status,
            source=source,
            correlation_id=correlation_id,
        )
        return TransitionResult(sale.id, old_status, new_status, True)

    async def release_reservations(self, db: AsyncSession, sale: Sale) -> None:
        """Give back the coupon and offer uses held by a sale, at most once."""
        if sale.coupon_reserved and sale.coupon_id is not None:
            await self.coupon_service.release(db, sale.coupon_id)
            sale.coupon_reserved = False
        if sale.offer_reserved and sale.offer_id is not None:
            await release_offer(db, sale.offer_id)
            sale.offer_reserved = False

    async def _splits(self, db: AsyncSession, sale_id: int) -> List[SaleSplit]:
        stmt = select(SaleSplit).where(SaleSplit.sale_id == sale_id).order_by(SaleSplit.id)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def set_split_status(
        self, db: AsyncSession, sale_id: int, status: str, now: datetime
    ) -> None:
        await db.execute(
            update(SaleSplit)
            .where(SaleSplit.sale_id == sale_id, SaleSplit.status != status)
            .values(status=status, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def _record_analytics(
        self,
        db: AsyncSession,
        user_id: int,
        day: date,
        sales_cents: int = 0,
        sales_count: int = 0,
        refunded_cents: int = 0,
        refunds_count: int = 0,
    ) -> None:
        stmt = select(DailyAnalytics).where(
            DailyAnalytics.user_id == user_id, DailyAnalytics.day == day
        )
        result = await db.execute(stmt)
        row = result.scalar_one_or_none()

        if row is None:
            db.add(
                DailyAnalytics(
                    user_id=user_id,
                    day=day,
                    total_sales_cents=sales_cents,
                    sales_count=sales_count,
                    refunded_cents=refunded_cents,
                    refunds_count=refunds_count,
                )
            )
            await db.flush()
            return

        await db.execute(
            update(DailyAnalytics)
            .where(DailyAnalytics.id == row.id)
            .values(
                total_sales_cents=DailyAnalytics.total_sales_cents + sales_cents,
                sales_count=DailyAnalytics.sales_count + sales_count,
                refunded_cents=DailyAnalytics.refunded_cents + refunded_cents,
                refunds_count=DailyAnalytics.refunds_count + refunds_count,
            )
            .execution_options(synchronize_session=False)
        )

    def _notify(
        self,
        db: AsyncSession,
        user_id: int,
        type_: str,
        title: str,
        message: str,
        payload: Dict[str, Any],
    ) -> None:
        db.add(
            Notification(
                user_id=user_id,
                type=type_,
                title=title,
                message=message,
                payload=payload,
                is_read=False,
                created_at=utcnow(),
            )
        )

    async def _on_succeeded(
        self, db: AsyncSession, sale: Sale, now: datetime, correlation_id: str
    ) -> None:
        sale.settled_at = now
        sale.error_message = None
        await self.set_split_status(db, sale.id, "available", now)

        if sale.affiliate_link_id is not None:
            await db.execute(
                update(AffiliateLink)
                .where(AffiliateLink.id == sale.affiliate_link_id)
                .values(
                    sales=AffiliateLink.sales + 1,
                    earnings_cents=AffiliateLink.earnings_cents + sale.commission_cents,
                )
                .execution_options(synchronize_session=False)
            )

        await self._record_analytics(
            db, sale.producer_id, now.date(), sales_cents=sale.amount_cents, sales_count=1
        )

        course = await db.get(Course, sale.course_id)
        title = course.title if course is not None else f"course {sale.course_id}"
        self._notify(
            db,
            sale.producer_id,
            "sale_completed",
            "New sale",
            f"{title} was sold for {format_cents(sale.amount_cents, sale.currency)}",
            {"sale_id": sale.id, "amount_cents": sale.amount_cents},
        )

        splits = await self._splits(db, sale.id)
        write_outbox_event(db, sale.id, "sale", "sale.completed", sale_payload(sale, splits))

        if sale.affiliate_id is not None:
            self._notify(
                db,
                sale.affiliate_id,
                "commission_earned",
                "Commission earned",
                f"You earned {format_cents(sale.commission_cents, sale.currency)} on {title}",
                {"sale_id": sale.id, "commission_cents": sale.commission_cents},
            )
            write_outbox_event(
                db,
                sale.id,
                "sale",
                "commission.earned",
                {
                    "sale_id": sale.id,
                    "course_id": sale.course_id,
                    "affiliate_id": sale.affiliate_id,
                    "commission_cents": sale.commission_cents,
                    "currency": sale.currency,
                },
            )

        logger.info(
            "sale_settled",
            sale_id=sale.id,
            amount_cents=sale.amount_cents,
            affiliate_id=sale.affiliate_id,
            correlation_id=correlation_id,
        )

    async def _on_refunded(self, db: AsyncSession, sale: Sale, now: datetime) -> None:
        sale.refunded_at = now
        await self.set_split_status(db, sale.id, "reversed", now)

        if sale.affiliate_link_id is not None:
            await db.execute(
                update(AffiliateLink)
                .where(AffiliateLink.id == sale.affiliate_link_id)
                .values(
                    sales=AffiliateLink.sales - 1,
                    earnings_cents=AffiliateLink.earnings_cents - sale.commission_cents,
                )
                .execution_options(synchronize_session=False)
            )

        await self._record_analytics(
            db, sale.producer_id, now.date(), refunded_cents=sale.amount_cents, refunds_count=1
        )
        self._notify(
            db,
            sale.producer_id,
            "sale_refunded",
            "Sale refunded",
            f"Sale #{sale.id} was refunded ({format_cents(sale.amount_cents, sale.currency)})",
            {"sale_id": sale.id, "amount_cents": sale.amount_cents},
        )
        write_outbox_event(db, sale.id, "sale", "sale.refunded", sale_payload(sale))

    async def _on_canceled(self, db: AsyncSession, sale: Sale, now: datetime) -> None:
        await self.release_reservations(db, sale)
        await self.set_split_status(db, sale.id, "reversed", now)

        # Free the idempotency key so the buyer can check out again
        sale.idempotency_key = f"{sale.idempotency_key}:canceled:{sale.id}"

        write_outbox_event(db, sale.id, "sale", "sale.canceled", sale_payload(sale))
