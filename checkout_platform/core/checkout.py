"""
Checkout orchestration with distributed locking and idempotency.

Flow:
1. Resolve the product and enforce the producer KYC gate
2. Check idempotency
3. Acquire distributed lock
4. Price the order and resolve affiliate attribution
5. Compute the payment split
6. Reserve coupon and offer uses
7. Persist sale, items and split lines
8. Create the Stripe PaymentIntent (free orders settle immediately)
9. Write to outbox and commit
10. Release lock
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from redlock import Redlock
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.config import get_settings
from checkout_platform.core.attribution import Attribution, AttributionService
from checkout_platform.core.coupons import REJECTION_MESSAGES, CouponRejection, CouponService
from checkout_platform.core.exceptions import (
    CheckoutError,
    CheckoutInProgressError,
    CouponRejectedError,
    DomainValidationError,
    OfferUnavailableError,
    ProducerNotVerifiedError,
)
from checkout_platform.core.idempotency import IdempotencyManager
from checkout_platform.core.outbox import write_outbox_event
from checkout_platform.core.pricing import PriceQuote, PricingEngine, ProductSource, reserve_offer
from checkout_platform.core.settlement import (
    SettlementEngine,
    record_sale_event,
    sale_payload,
)
from checkout_platform.core.splits import (
    AFFILIATE,
    PLATFORM,
    SplitParticipant,
    SplitPlan,
    calculate_splits,
    load_co_producers,
)
from checkout_platform.database.models import Sale, SaleItem, SaleSplit, User, utcnow
from checkout_platform.integrations.stripe_client import StripeClient, StripeError
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class CheckoutRequest:
    """What the buyer submitted on the checkout page."""

    buyer_email: str
    course_id: Optional[int] = None
    sales_link_id: Optional[str] = None
    offer_link_id: Optional[str] = None
    order_bump_ids: List[int] = field(default_factory=list)
    coupon_code: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_address: Optional[Dict[str, Any]] = None
    payment_method: str = "card"
    session_id: Optional[str] = None

    @property
    def product_ref(self) -> str:
        if self.sales_link_id is not None:
            return f"sales_link:{self.sales_link_id}"
        if self.offer_link_id is not None:
            return f"offer:{self.offer_link_id}"
        return f"course:{self.course_id}"


def checkout_response(sale: Sale) -> Dict[str, Any]:
    """Response returned for a created (or replayed) checkout."""
    return {
        "sale_id": sale.id,
        "status": sale.status,
        "currency": sale.currency,
        "subtotal_cents": sale.subtotal_cents,
        "discount_cents": sale.discount_cents,
        "amount_cents": sale.amount_cents,
        "platform_fee_cents": sale.platform_fee_cents,
        "commission_cents": sale.commission_cents,
        "affiliate_id": sale.affiliate_id,
        "payment_intent_id": sale.payment_intent_id,
        "client_secret": sale.client_secret,
        "idempotency_key": sale.idempotency_key,
        "created_at": sale.created_at.isoformat(),
    }


class CheckoutService:
    """
    Checkout orchestrator.

    Turns a buyer's checkout request into a pending sale with a Stripe
    PaymentIntent, with idempotency and distributed locking.
    """

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        idempotency_manager: Optional[IdempotencyManager] = None,
        pricing_engine: Optional[PricingEngine] = None,
        attribution_service: Optional[AttributionService] = None,
        settlement_engine: Optional[SettlementEngine] = None,
        coupon_service: Optional[CouponService] = None,
    ):
        self.settings = get_settings()
        self.stripe_client = stripe_client or StripeClient()
        self.idempotency_manager = idempotency_manager or IdempotencyManager()
        self.coupon_service = coupon_service or CouponService()
        self.pricing_engine = pricing_engine or PricingEngine(self.coupon_service)
        self.attribution_service = attribution_service or AttributionService()
        self.settlement_engine = settlement_engine or SettlementEngine(
            coupon_service=self.coupon_service,
            idempotency_manager=self.idempotency_manager,
        )
        self.redlock: Optional[Redlock] = None

        logger.info("checkout_service_initialized")

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock([self.settings.redis_url])
        return self.redlock

    @staticmethod
    async def ensure_can_sell(db: AsyncSession, producer_id: int) -> User:
        """
        KYC gate: only active producers with approved KYC may sell.

        Raises:
            ProducerNotVerifiedError: If the producer is not verified
        """
        producer = await db.get(User, producer_id)
        if producer is None or not producer.is_verified:
            raise ProducerNotVerifiedError(
                producer_id, producer.kyc_status if producer is not None else "unknown"
            )
        return producer

    async def _resolve(self, db: AsyncSession, request: CheckoutRequest) -> ProductSource:
        source = await self.pricing_engine.resolve_source(
            db,
            course_id=request.course_id,
            sales_link_id=request.sales_link_id,
            offer_link_id=request.offer_link_id,
        )
        await self.ensure_can_sell(db, source.course.producer_id)
        return source

    async def quote(self, db: AsyncSession, request: CheckoutRequest) -> Dict[str, Any]:
        """
        Price a checkout without side effects.

        Returns the quote together with the split the sale would get.
        """
        source = await self._resolve(db, request)
        quote = await self.pricing_engine.quote(
            db, source, request.order_bump_ids, request.coupon_code
        )
        plan, _ = await self._plan_splits(db, quote, request.session_id)
        response = quote.to_dict()
        response["affiliate_id"] = plan.affiliate_id
        response["splits"] = [
            {
                "party": line.party,
                "user_id": line.user_id,
                "percentage": str(line.percentage) if line.percentage is not None else None,
                "amount_cents": line.amount_cents,
            }
            for line in plan.lines
        ]
        return response

    async def _plan_splits(
        self, db: AsyncSession, quote: PriceQuote, session_id: Optional[str]
    ) -> Tuple[SplitPlan, Optional[Attribution]]:
        affiliate = None
        attribution = await self.attribution_service.resolve(db, quote.course.id, session_id)
        if attribution is not None:
            affiliate = SplitParticipant(
                user_id=attribution.affiliate_id,
                percentage=attribution.commission_percentage,
            )
        plan = calculate_splits(
            total_cents=quote.total_cents,
            producer_id=quote.producer_id,
            platform_fee_percentage=self.settings.platform_fee_percentage,
            co_producers=await load_co_producers(db, quote.course.id),
            affiliate=affiliate,
        )
        return plan, attribution

    def _validate_total(self, total_cents: int) -> None:
        if 0 < total_cents < self.settings.minimum_charge_cents:
            raise DomainValidationError(
                f"Amount must be at least {self.settings.minimum_charge_cents} cents",
                error_code="below_minimum_charge",
            )

    async def _reserve(self, db: AsyncSession, quote: PriceQuote) -> None:
        if quote.coupon is not None and not await self.coupon_service.reserve(db, quote.coupon.id):
            raise CouponRejectedError(
                CouponRejection.EXHAUSTED.value, REJECTION_MESSAGES[CouponRejection.EXHAUSTED]
            )
        if quote.offer is not None and not await reserve_offer(db, quote.offer.id):
            raise OfferUnavailableError(
                f"Offer {quote.offer.link_id} is no longer available",
                user_message="This offer is no longer available.",
            )

    def _build_sale(
        self,
        request: CheckoutRequest,
        quote: PriceQuote,
        plan: SplitPlan,
        idempotency_key: str,
        affiliate_link_id: Optional[int],
    ) -> Sale:
        now = utcnow()
        return Sale(
            course_id=quote.course.id,
            producer_id=quote.producer_id,
            buyer_email=request.buyer_email.strip().lower(),
            buyer_name=request.buyer_name,
            buyer_address=request.buyer_address,
            payment_method=request.payment_method,
            currency=quote.currency,
            list_price_cents=quote.list_price_cents,
            base_price_cents=quote.base_price_cents,
            bumps_cents=quote.bumps_cents,
            subtotal_cents=quote.subtotal_cents,
            discount_cents=quote.discount_cents,
            amount_cents=quote.total_cents,
            platform_fee_cents=plan.amount_for(PLATFORM),
            commission_cents=plan.amount_for(AFFILIATE),
            coupon_id=quote.coupon.id if quote.coupon is not None else None,
            coupon_reserved=quote.coupon is not None,
            offer_id=quote.offer.id if quote.offer is not None else None,
            offer_reserved=quote.offer is not None,
            sales_link_id=quote.sales_link.id if quote.sales_link is not None else None,
            affiliate_id=plan.affiliate_id,
            affiliate_link_id=affiliate_link_id if plan.affiliate_id is not None else None,
            session_id=request.session_id,
            status="pending",
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )

    async def create_checkout(
        self,
        db: AsyncSession,
        request: CheckoutRequest,
        client_idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a checkout with idempotency and locking.

        Args:
            db: Database session
            request: Checkout request
            client_idempotency_key: Optional Idempotency-Key header value

        Returns:
            Dict[str, Any]: Checkout response with the PaymentIntent client secret

        Raises:
            ProducerNotVerifiedError: If the producer may not sell
            CouponRejectedError: If the coupon cannot be applied
            CheckoutInProgressError: If the same checkout is being created
            CheckoutError: If Stripe rejects the payment
        """
        start_time = time.time()
        correlation_id = str(uuid.uuid4())

        logger.info(
            "checkout_started",
            correlation_id=correlation_id,
            buyer_email=request.buyer_email,
            product=request.product_ref,
            order_bumps=len(request.order_bump_ids),
            has_coupon=bool(request.coupon_code),
        )

        source = await self._resolve(db, request)

        idempotency_key = IdempotencyManager.generate_key(
            buyer_email=request.buyer_email,
            product_ref=request.product_ref,
            order_bump_ids=request.order_bump_ids,
            coupon_code=request.coupon_code,
            session_id=request.session_id,
            client_key=client_idempotency_key,
        )

        cached_response = await self.idempotency_manager.check_idempotency(
            idempotency_key, db, checkout_response
        )
        if cached_response:
            logger.info(
                "checkout_idempotent_return",
                correlation_id=correlation_id,
                idempotency_key=idempotency_key,
            )
            return cached_response

        lock_key = f"checkout:lock:{idempotency_key}"
        redlock = self._get_redlock()
        lock = redlock.lock(lock_key, self.settings.redis_lock_timeout * 1000)

        if not lock:
            metrics.record_distributed_lock("failed")
            logger.warning(
                "checkout_lock_acquisition_failed",
                correlation_id=correlation_id,
                lock_key=lock_key,
            )
            raise CheckoutInProgressError(
                "Failed to acquire lock - checkout already in progress",
                user_message="This checkout is already being processed.",
            )

        metrics.record_distributed_lock("acquired")
        try:
            # Another request may have finished while we waited for the lock
            cached_response = await self.idempotency_manager.check_idempotency(
                idempotency_key, db, checkout_response
            )
            if cached_response:
                return cached_response

            quote = await self.pricing_engine.quote(
                db, source, request.order_bump_ids, request.coupon_code
            )
            self._validate_total(quote.total_cents)
            plan, attribution = await self._plan_splits(db, quote, request.session_id)

            await self._reserve(db, quote)

            sale = self._build_sale(
                request,
                quote,
                plan,
                idempotency_key,
                attribution.affiliate_link_id if attribution is not None else None,
            )
            db.add(sale)
            await db.flush()

            for item in quote.items:
                db.add(
                    SaleItem(
                        sale_id=sale.id,
                        kind=item.kind,
                        reference_id=item.reference_id,
                        description=item.description,
                        amount_cents=item.amount_cents,
                    )
                )
            for line in plan.lines:
                db.add(
                    SaleSplit(
                        sale_id=sale.id,
                        party=line.party,
                        user_id=line.user_id,
                        percentage=line.percentage,
                        amount_cents=line.amount_cents,
                        status="pending",
                    )
                )

            record_sale_event(
                db,
                sale.id,
                "sale.created",
                {
                    "quote": quote.to_dict(),
                    "affiliate_id": plan.affiliate_id,
                    "click_id": attribution.click_id if attribution is not None else None,
                },
                correlation_id,
            )
            await db.flush()

            logger.info(
                "sale_record_created",
                correlation_id=correlation_id,
                sale_id=sale.id,
                amount_cents=sale.amount_cents,
            )

            if sale.amount_cents == 0:
                # sale.created must be published ahead of sale.completed
                write_outbox_event(db, sale.id, "sale", "sale.created", sale_payload(sale))
                await self.settlement_engine.apply(
                    db, sale, "succeeded", source="checkout", correlation_id=correlation_id
                )
            else:
                await self._create_payment_intent(db, sale, source, correlation_id)
                write_outbox_event(db, sale.id, "sale", "sale.created", sale_payload(sale))

            await db.commit()

            duration = time.time() - start_time
            metrics.record_checkout(sale.status, sale.currency, sale.amount_cents)
            metrics.record_checkout_duration(duration)
            logger.info(
                "checkout_created_successfully",
                correlation_id=correlation_id,
                sale_id=sale.id,
                status=sale.status,
                duration_seconds=duration,
            )

            response = checkout_response(sale)
            await self.idempotency_manager.store_response(idempotency_key, response)
            return response

        finally:
            redlock.unlock(lock)
            logger.info(
                "checkout_lock_released",
                correlation_id=correlation_id,
                lock_key=lock_key,
            )

    async def _create_payment_intent(
        self,
        db: AsyncSession,
        sale: Sale,
        source: ProductSource,
        correlation_id: str,
    ) -> None:
        try:
            payment_intent = await self.stripe_client.create_payment_intent(
                amount_cents=sale.amount_cents,
                currency=sale.currency,
                idempotency_key=sale.idempotency_key,
                metadata={
                    "sale_id": str(sale.id),
                    "course_id": str(sale.course_id),
                    "producer_id": str(sale.producer_id),
                    "affiliate_id": str(sale.affiliate_id or ""),
                    "correlation_id": correlation_id,
                },
                transfer_group=f"sale_{sale.id}",
                receipt_email=sale.buyer_email,
            )
        except StripeError as e:
            await self._fail_checkout(db, sale, e, correlation_id)
            raise CheckoutError(
                f"Payment failed: {str(e)}",
                user_message="The payment could not be started. Please try again.",
            ) from e

        sale.payment_intent_id = payment_intent.id
        sale.client_secret = payment_intent.client_secret
        record_sale_event(
            db,
            sale.id,
            "stripe.payment_intent_created",
            {"payment_intent_id": payment_intent.id, "status": payment_intent.status},
            correlation_id,
        )
        logger.info(
            "stripe_payment_intent_created",
            correlation_id=correlation_id,
            sale_id=sale.id,
            payment_intent_id=payment_intent.id,
            course_title=source.course.title,
        )

    async def _fail_checkout(
        self, db: AsyncSession, sale: Sale, error: StripeError, correlation_id: str
    ) -> None:
        """Persist a checkout Stripe refused, giving back its reservations."""
        now = utcnow()
        sale.status = "failed"
        sale.error_message = str(error)
        sale.updated_at = now
        await self.settlement_engine.release_reservations(db, sale)
        # No intent exists, so nothing will ever settle these lines
        await self.settlement_engine.set_split_status(db, sale.id, "reversed", now)
        # The intent never existed, so a retry must be able to reuse the key
        sale.idempotency_key = f"{sale.idempotency_key}:failed:{sale.id}"
        write_outbox_event(db, sale.id, "sale", "sale.failed", sale_payload(sale))
        record_sale_event(
            db,
            sale.id,
            "sale.failed",
            {"error": str(error), "error_type": error.error_type.value},
            correlation_id,
        )
        await db.commit()

        metrics.record_checkout("failed", sale.currency, sale.amount_cents)
        logger.error(
            "stripe_payment_failed",
            correlation_id=correlation_id,
            sale_id=sale.id,
            error=str(error),
            error_type=error.error_type.value,
        )
