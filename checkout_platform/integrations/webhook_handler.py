"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification
- Event deduplication using Redis
- Routing of payment events into the settlement state machine
"""
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.config import get_settings
from checkout_platform.core.settlement import (
    CANCELED,
    FAILED,
    REFUNDED,
    SUCCEEDED,
    SettlementEngine,
)
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


class WebhookHandler:
    """
    Handles Stripe webhook events with deduplication and processing.

    Features:
    - Signature verification using Stripe webhook secrets
    - Event deduplication (store processed webhook IDs in Redis)
    - Event type routing to settlement transitions
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settlement_engine: Optional[SettlementEngine] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for event deduplication
            settlement_engine: Applies the reported payment statuses
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self.settlement_engine = settlement_engine or SettlementEngine()
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("payment_intent.succeeded", self.handle_payment_intent_succeeded)
        self.register_handler(
            "payment_intent.payment_failed", self.handle_payment_intent_payment_failed
        )
        self.register_handler("payment_intent.canceled", self.handle_payment_intent_canceled)
        self.register_handler("charge.refunded", self.handle_charge_refunded)

        logger.info("webhook_handler_initialized")

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'payment_intent.succeeded')
            handler: Async callable receiving the event object and a session
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(
        self, payload: bytes, signature: str, secret: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value
            secret: Optional webhook secret (uses config if not provided)

        Returns:
            Dict[str, Any]: Verified event as plain JSON

        Raises:
            WebhookError: If signature verification fails
        """
        webhook_secret = secret or self.settings.stripe_webhook_secret

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {str(e)}") from e
        except ValueError as e:
            logger.error("webhook_verification_error", error=str(e))
            raise WebhookError(f"Webhook verification failed: {str(e)}") from e

        event = json.loads(payload)
        logger.info(
            "webhook_signature_verified",
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Args:
            event_id: Stripe event ID

        Returns:
            bool: True if event already processed, False otherwise
        """
        try:
            redis = self._ensure_redis()
            exists = await redis.exists(f"webhook:processed:{event_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # Settlement transitions are idempotent, so processing twice is safe
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """Remember a processed event for webhook_dedup_ttl seconds."""
        try:
            redis = self._ensure_redis()
            await redis.setex(
                f"webhook:processed:{event_id}", self.settings.webhook_dedup_ttl, "1"
            )
            logger.info("webhook_marked_processed", event_id=event_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(self, event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
        """
        Process a webhook event.

        Args:
            event: Verified Stripe event
            db: Database session

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            WebhookError: If event processing fails
        """
        start_time = time.time()
        event_id = event["id"]
        event_type = event["type"]
        event_data = event["data"]["object"]

        logger.info(
            "processing_webhook_event",
            event_id=event_id,
            event_type=event_type,
        )

        if await self.is_event_processed(event_id):
            logger.info(
                "webhook_event_already_processed",
                event_id=event_id,
                event_type=event_type,
            )
            metrics.record_webhook_event(event_type, "duplicate", time.time() - start_time)
            return {
                "status": "duplicate",
                "event_id": event_id,
                "message": "Event already processed",
            }

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info(
                "webhook_no_handler",
                event_id=event_id,
                event_type=event_type,
            )
            await self.mark_event_processed(event_id)
            metrics.record_webhook_event(event_type, "ignored", time.time() - start_time)
            return {
                "status": "no_handler",
                "event_id": event_id,
                "event_type": event_type,
                "message": f"No handler registered for event type: {event_type}",
            }

        try:
            result = await handler(event_data, db)
            await db.commit()
        except Exception as e:
            await db.rollback()
            metrics.record_webhook_event(event_type, "failed", time.time() - start_time)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            raise WebhookError(f"Failed to process event {event_id}: {str(e)}") from e

        await self.mark_event_processed(event_id)
        metrics.record_webhook_event(event_type, "success", time.time() - start_time)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
        )

        return {
            "status": "success",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }

    async def _apply(
        self,
        db: AsyncSession,
        payment_intent_id: str,
        new_status: str,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        transition = await self.settlement_engine.apply_for_payment_intent(
            db,
            payment_intent_id,
            new_status,
            source="webhook",
            error_message=error_message,
        )
        if transition is None:
            return {"payment_intent_id": payment_intent_id, "status": "sale_not_found"}
        return {"payment_intent_id": payment_intent_id, **transition.to_dict()}

    async def handle_payment_intent_succeeded(
        self, payment_intent: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Handle payment_intent.succeeded event.

        A capture that does not match the sale amount is left for
        reconciliation instead of being settled.
        """
        payment_intent_id = payment_intent["id"]
        amount = payment_intent.get("amount_received") or payment_intent.get("amount")

        logger.info(
            "handling_payment_intent_succeeded",
            payment_intent_id=payment_intent_id,
            amount=amount,
            currency=payment_intent.get("currency"),
        )

        sale = await self.settlement_engine.find_by_payment_intent(db, payment_intent_id)
        if sale is None:
            logger.warning("payment_intent_not_found_in_db", payment_intent_id=payment_intent_id)
            return {"payment_intent_id": payment_intent_id, "status": "sale_not_found"}

        if amount is not None and amount != sale.amount_cents:
            logger.warning(
                "payment_intent_amount_mismatch",
                payment_intent_id=payment_intent_id,
                sale_id=sale.id,
                stripe_amount=amount,
                sale_amount=sale.amount_cents,
            )
            return {
                "payment_intent_id": payment_intent_id,
                "sale_id": sale.id,
                "status": "amount_mismatch",
            }

        transition = await self.settlement_engine.apply(db, sale, SUCCEEDED, source="webhook")
        return {"payment_intent_id": payment_intent_id, **transition.to_dict()}

    async def handle_payment_intent_payment_failed(
        self, payment_intent: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """Handle payment_intent.payment_failed event."""
        payment_intent_id = payment_intent["id"]
        last_error = payment_intent.get("last_payment_error") or {}
        error_message = last_error.get("message", "Unknown error")

        logger.info(
            "handling_payment_intent_failed",
            payment_intent_id=payment_intent_id,
            error=error_message,
        )
        return await self._apply(db, payment_intent_id, FAILED, error_message)

    async def handle_payment_intent_canceled(
        self, payment_intent: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """Handle payment_intent.canceled event."""
        payment_intent_id = payment_intent["id"]
        logger.info(
            "handling_payment_intent_canceled",
            payment_intent_id=payment_intent_id,
            reason=payment_intent.get("cancellation_reason"),
        )
        return await self._apply(db, payment_intent_id, CANCELED)

    async def handle_charge_refunded(
        self, charge: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Handle charge.refunded event.

        Only full refunds move the sale; partial refunds are logged.
        """
        payment_intent_id = charge.get("payment_intent")
        if not payment_intent_id:
            logger.warning("charge_refunded_no_payment_intent", charge_id=charge.get("id"))
            return {"status": "skipped", "reason": "No payment_intent associated"}

        logger.info(
            "handling_charge_refunded",
            charge_id=charge.get("id"),
            payment_intent_id=payment_intent_id,
            amount_refunded=charge.get("amount_refunded"),
        )

        if not charge.get("refunded"):
            logger.info(
                "charge_partially_refunded",
                charge_id=charge.get("id"),
                payment_intent_id=payment_intent_id,
            )
            return {
                "payment_intent_id": payment_intent_id,
                "status": "skipped",
                "reason": "Partial refund",
            }

        return await self._apply(db, payment_intent_id, REFUNDED)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
