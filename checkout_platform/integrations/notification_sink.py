"""
Delivery of sale events to producer webhook subscriptions.

Outbox events are mapped to the webhook events producers subscribe to and
POSTed as JSON with an HMAC-SHA256 signature of the body:

    X-Webhook-Event: payment_confirmed
    X-Webhook-Signature: sha256=<hex digest keyed with the subscription secret>

Each event gets a single delivery attempt; every attempt is logged.
"""
import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_platform.config import get_settings
from checkout_platform.database.connection import get_session_factory
from checkout_platform.database.models import Webhook, WebhookLog, utcnow
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

WEBHOOK_EVENTS = (
    "payment_pending",
    "payment_confirmed",
    "payment_refunded",
    "commission_earned",
)

# outbox event type -> (webhook event, payload field naming the recipient)
EVENT_ROUTES: Dict[str, Tuple[str, str]] = {
    "sale.created": ("payment_pending", "producer_id"),
    "sale.completed": ("payment_confirmed", "producer_id"),
    "sale.refunded": ("payment_refunded", "producer_id"),
    "commission.earned": ("commission_earned", "affiliate_id"),
}

RESPONSE_BODY_LIMIT = 1000


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_payload_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check an X-Webhook-Signature header value against a body."""
    expected = f"sha256={sign_payload(secret, body)}"
    return hmac.compare_digest(expected, signature)


class ProducerWebhookDispatcher:
    """Publisher function for the outbox that calls producer webhooks."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.http_client = http_client
        self.timeout = timeout or get_settings().webhook_delivery_timeout

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def _subscriptions(
        self, db: AsyncSession, user_id: int, event: str
    ) -> List[Webhook]:
        stmt = (
            select(Webhook)
            .where(Webhook.user_id == user_id, Webhook.is_active.is_(True))
            .order_by(Webhook.id)
        )
        result = await db.execute(stmt)
        return [webhook for webhook in result.scalars().all() if event in webhook.events]

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        db: AsyncSession,
        webhook: Webhook,
        event: str,
        body: Dict[str, Any],
    ) -> bool:
        raw = json.dumps(body, sort_keys=True, separators=(",", ":")).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event,
            "X-Webhook-Signature": f"sha256={sign_payload(webhook.secret, raw)}",
        }

        log = WebhookLog(webhook_id=webhook.id, event=event, payload=body, success=False)
        try:
            response = await client.post(webhook.url, content=raw, headers=headers)
            log.response_status = response.status_code
            log.response_body = response.text[:RESPONSE_BODY_LIMIT]
            log.success = response.is_success
            if not response.is_success:
                log.error_message = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            log.error_message = str(e) or e.__class__.__name__

        db.add(log)
        metrics.record_producer_webhook_delivery(event, log.success)
        logger.info(
            "producer_webhook_delivered" if log.success else "producer_webhook_delivery_failed",
            webhook_id=webhook.id,
            webhook_event=event,
            status_code=log.response_status,
            error=log.error_message,
        )
        return log.success

    async def publish(self, event_data: Dict[str, Any]) -> int:
        """
        Deliver one outbox event to the subscribed webhooks.

        Args:
            event_data: Outbox event as built by OutboxPublisher

        Returns:
            int: Number of successful deliveries
        """
        route = EVENT_ROUTES.get(event_data["event_type"])
        if route is None:
            return 0

        event, recipient_field = route
        payload = event_data["payload"]
        recipient_id = payload.get(recipient_field)
        if recipient_id is None:
            return 0

        body = {
            "event": event,
            "event_id": event_data.get("id"),
            "timestamp": utcnow().isoformat(),
            "data": payload,
        }

        async with self.session_factory() as db:
            webhooks = await self._subscriptions(db, recipient_id, event)
            if not webhooks:
                return 0

            delivered = 0
            if self.http_client is not None:
                for webhook in webhooks:
                    delivered += await self._deliver(self.http_client, db, webhook, event, body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    for webhook in webhooks:
                        delivered += await self._deliver(client, db, webhook, event, body)

            await db.commit()
            return delivered
