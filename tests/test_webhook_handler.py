"""
Tests for Stripe webhook handling.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

import pytest
import stripe
from sqlalchemy import select

from checkout_platform.database.models import SaleSplit
from checkout_platform.integrations.webhook_handler import WebhookError, WebhookHandler
from factories import make_sale

WEBHOOK_SECRET = "whsec_test_fake_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def build_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


@pytest.fixture
def webhook_handler(fake_redis, settlement_engine) -> WebhookHandler:
    return WebhookHandler(redis_client=fake_redis, settlement_engine=settlement_engine)


class TestSignatureVerification:
    """Test suite for WebhookHandler.verify_signature."""

    @pytest.mark.unit
    def test_valid_signature(self, webhook_handler) -> None:
        payload = json.dumps(
            build_event("payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"})
        ).encode()

        event = webhook_handler.verify_signature(payload, sign(payload))

        assert event["id"] == "evt_1"
        assert event["data"]["object"]["id"] == "pi_1"

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, webhook_handler) -> None:
        payload = json.dumps(build_event("payment_intent.succeeded", {"id": "pi_1"})).encode()

        with pytest.raises(WebhookError, match="Invalid webhook signature"):
            webhook_handler.verify_signature(payload, sign(payload, secret="whsec_other"))

    @pytest.mark.unit
    def test_construct_event_errors_are_wrapped(self, webhook_handler, mocker) -> None:
        mocker.patch(
            "stripe.Webhook.construct_event", side_effect=ValueError("Invalid payload")
        )

        with pytest.raises(WebhookError, match="Webhook verification failed"):
            webhook_handler.verify_signature(b"{}", "t=1,v1=abc")

    @pytest.mark.unit
    def test_signature_error_is_wrapped(self, webhook_handler, mocker) -> None:
        mocker.patch(
            "stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("bad", "t=1,v1=abc"),
        )

        with pytest.raises(WebhookError):
            webhook_handler.verify_signature(b"{}", "t=1,v1=abc")


class TestProcessEvent:
    """Test suite for WebhookHandler.process_event."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_succeeded_settles_sale(
        self, db, course, webhook_handler, fake_redis
    ) -> None:
        sale = await make_sale(db, course, payment_intent_id="pi_1")
        event = build_event(
            "payment_intent.succeeded", {"id": "pi_1", "amount_received": 10000}
        )

        result = await webhook_handler.process_event(event, db)

        assert result["status"] == "success"
        assert result["result"]["applied"] is True
        assert sale.status == "succeeded"
        assert "webhook:processed:evt_1" in fake_redis.store

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_skipped(self, db, course, webhook_handler) -> None:
        await make_sale(db, course, payment_intent_id="pi_1")
        event = build_event("payment_intent.succeeded", {"id": "pi_1", "amount": 10000})

        await webhook_handler.process_event(event, db)
        result = await webhook_handler.process_event(event, db)

        assert result["status"] == "duplicate"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivered_event_with_new_id_is_noop(
        self, db, course, webhook_handler
    ) -> None:
        sale = await make_sale(db, course, payment_intent_id="pi_1")
        obj = {"id": "pi_1", "amount": 10000}

        await webhook_handler.process_event(build_event("payment_intent.succeeded", obj), db)
        result = await webhook_handler.process_event(
            build_event("payment_intent.succeeded", obj, event_id="evt_2"), db
        )

        assert result["result"]["applied"] is False
        assert result["result"]["reason"] == "unchanged"
        assert sale.status == "succeeded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, db, webhook_handler, fake_redis) -> None:
        result = await webhook_handler.process_event(
            build_event("customer.created", {"id": "cus_1"}), db
        )

        assert result["status"] == "no_handler"
        assert "webhook:processed:evt_1" in fake_redis.store

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_left_pending(self, db, course, webhook_handler) -> None:
        sale = await make_sale(db, course, payment_intent_id="pi_1")

        result = await webhook_handler.process_event(
            build_event("payment_intent.succeeded", {"id": "pi_1", "amount_received": 500}), db
        )

        assert result["result"]["status"] == "amount_mismatch"
        assert sale.status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_failed(self, db, course, webhook_handler) -> None:
        sale = await make_sale(db, course, payment_intent_id="pi_1")

        await webhook_handler.process_event(
            build_event(
                "payment_intent.payment_failed",
                {"id": "pi_1", "last_payment_error": {"message": "Insufficient funds"}},
            ),
            db,
        )

        assert sale.status == "failed"
        assert sale.error_message == "Insufficient funds"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_skipped(self, db, course, webhook_handler) -> None:
        sale = await make_sale(db, course, payment_intent_id="pi_1", status="succeeded")

        result = await webhook_handler.process_event(
            build_event(
                "charge.refunded",
                {"id": "ch_1", "payment_intent": "pi_1", "refunded": False, "amount_refunded": 100},
            ),
            db,
        )

        assert result["result"]["reason"] == "Partial refund"
        assert sale.status == "succeeded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund(self, db, course, webhook_handler) -> None:
        sale = await make_sale(
            db, course, payment_intent_id="pi_1", status="succeeded", split_status="available"
        )

        result = await webhook_handler.process_event(
            build_event(
                "charge.refunded",
                {"id": "ch_1", "payment_intent": "pi_1", "refunded": True, "amount_refunded": 10000},
            ),
            db,
        )

        assert result["result"]["applied"] is True
        assert sale.status == "refunded"
        statuses = (
            await db.execute(
                select(SaleSplit.status).where(SaleSplit.sale_id == sale.id)
            )
        ).scalars().all()
        assert set(statuses) == {"reversed"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_payment_intent(self, db, webhook_handler) -> None:
        result = await webhook_handler.process_event(
            build_event("payment_intent.canceled", {"id": "pi_missing"}), db
        )

        assert result["status"] == "success"
        assert result["result"]["status"] == "sale_not_found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_handler_is_retried_later(
        self, db, webhook_handler, fake_redis
    ) -> None:
        async def broken(event_data, session):
            raise RuntimeError("database unavailable")

        webhook_handler.register_handler("payment_intent.succeeded", broken)

        with pytest.raises(WebhookError, match="database unavailable"):
            await webhook_handler.process_event(
                build_event("payment_intent.succeeded", {"id": "pi_1"}), db
            )

        assert "webhook:processed:evt_1" not in fake_redis.store
