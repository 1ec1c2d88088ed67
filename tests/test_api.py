"""
HTTP-level tests for the FastAPI application.
"""
import json
import re
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from checkout_platform.api import routes
from checkout_platform.api.main import app
from checkout_platform.core.catalog import CatalogService
from checkout_platform.database.models import AffiliateLinkClick, Sale
from checkout_platform.integrations.webhook_handler import WebhookHandler
from factories import add_affiliate, make_sale, make_user
from test_webhook_handler import build_event, sign


def as_user(user) -> dict:
    return {"X-User-ID": str(user.id)}


def checkout_body(course, **overrides: Any) -> dict:
    body = {"course_id": course.id, "buyer_email": "buyer@example.com"}
    body.update(overrides)
    return body


@pytest_asyncio.fixture
async def client(
    session_factory,
    monkeypatch,
    checkout_service,
    fake_redis,
    settlement_engine,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """API client wired to the test database, fake Redis and mocked Stripe."""
    monkeypatch.setattr(routes, "checkout_service", checkout_service)
    monkeypatch.setattr(routes, "coupon_service", checkout_service.coupon_service)
    monkeypatch.setattr(routes, "attribution_service", checkout_service.attribution_service)
    monkeypatch.setattr(
        routes,
        "webhook_handler",
        WebhookHandler(redis_client=fake_redis, settlement_engine=settlement_engine),
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestIdentity:
    """Test suite for caller identification and domain error mapping."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_user_header(self, client) -> None:
        response = await client.get("/users/me")

        assert response.status_code == 401
        assert response.json()["detail"] == "X-User-ID header is required"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_user(self, client) -> None:
        response = await client.get("/users/me", headers={"X-User-ID": "404"})

        assert response.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_me(self, client, db, producer) -> None:
        await db.commit()

        response = await client.get("/users/me", headers=as_user(producer))

        assert response.status_code == 200
        assert response.json()["email"] == "producer@example.com"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unverified_producer_error_body(self, client, db) -> None:
        seller = await make_user(db, "new@example.com", kyc_status="pending")
        await db.commit()

        response = await client.post(
            "/courses",
            json={"title": "Course", "price_cents": 1000},
            headers=as_user(seller),
        )

        assert response.status_code == 403
        assert response.json() == {
            "error": {
                "code": "kyc_required",
                "message": "Identity verification must be approved before selling.",
                "type": "ProducerNotVerifiedError",
            }
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_routes_require_admin(self, client, db, producer) -> None:
        await db.commit()

        response = await client.patch(
            f"/admin/users/{producer.id}/kyc",
            json={"status": "approved"},
            headers=as_user(producer),
        )

        assert response.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestCheckoutEndpoints:
    """Test suite for quote, checkout and coupon validation over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_replayed_by_idempotency_key(
        self, client, db, course, mock_stripe_client
    ) -> None:
        await db.commit()
        headers = {"Idempotency-Key": "client-key-1"}

        first = await client.post("/checkout", json=checkout_body(course), headers=headers)
        second = await client.post("/checkout", json=checkout_body(course), headers=headers)

        assert first.status_code == 201
        assert second.status_code == 201
        assert first.json()["sale_id"] == second.json()["sale_id"]
        assert first.json()["amount_cents"] == 10000
        assert first.json()["platform_fee_cents"] == 1000
        assert first.json()["client_secret"] == "pi_test_1_secret"
        assert mock_stripe_client.create_payment_intent.await_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_course(self, client) -> None:
        response = await client.post(
            "/checkout", json={"course_id": 9999, "buyer_email": "buyer@example.com"}
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_quote(self, client, db, course) -> None:
        await db.commit()

        response = await client.post("/checkout/quote", json=checkout_body(course))

        assert response.status_code == 200
        assert response.json()["total_cents"] == 10000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validate_coupon_defaults_to_list_price(
        self, client, db, producer, course
    ) -> None:
        await CatalogService().create_coupon(
            db, producer, course.id, "LAUNCH", "percentage", percent_off=Decimal("20")
        )
        await db.commit()

        valid = await client.post(
            "/coupons/validate", json={"code": "launch", "course_id": course.id}
        )
        missing = await client.post(
            "/coupons/validate", json={"code": "NOPE", "course_id": course.id}
        )

        assert valid.status_code == 200
        assert valid.json()["valid"] is True
        assert valid.json()["discount_cents"] == 2000
        assert missing.json()["valid"] is False
        assert missing.json()["reason"] == "not_found"


class TestAffiliateTracking:
    """Test suite for tracking links and cookie attribution."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_click_then_checkout_attributes_affiliate(
        self, client, db, course
    ) -> None:
        promoter = await make_user(db, "aff@example.com")
        await add_affiliate(db, course, promoter, "30")
        await db.commit()

        link_response = await client.post(
            "/affiliate-links", json={"course_id": course.id}, headers=as_user(promoter)
        )
        assert link_response.status_code == 200
        link = link_response.json()
        assert link["url"] == f"https://shop.test/aff/{link['link_id']}"

        redirect = await client.get(f"/aff/{link['link_id']}")

        assert redirect.status_code == 302
        assert redirect.headers["location"] == (
            f"https://shop.test/checkout?course_id={course.id}"
        )
        set_cookie = redirect.headers["set-cookie"]
        assert "HttpOnly" in set_cookie
        session_id = re.search(r"aff_session=([0-9a-f]+)", set_cookie).group(1)

        clicks = (await db.execute(select(AffiliateLinkClick))).scalars().all()
        assert [click.session_id for click in clicks] == [session_id]

        response = await client.post(
            "/checkout",
            json=checkout_body(course),
            headers={"Cookie": f"aff_session={session_id}"},
        )

        assert response.status_code == 201
        assert response.json()["affiliate_id"] == promoter.id
        assert response.json()["commission_cents"] == 3000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_link(self, client) -> None:
        response = await client.get("/aff/missing")

        assert response.status_code == 404


class TestStripeWebhookEndpoint:
    """Test suite for POST /webhooks/stripe."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature_header(self, client) -> None:
        response = await client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature(self, client) -> None:
        response = await client.post(
            "/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"}
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_event_settles_sale(self, client, db, course) -> None:
        sale = await make_sale(db, course, payment_intent_id="pi_1")
        await db.commit()
        payload = json.dumps(
            build_event("payment_intent.succeeded", {"id": "pi_1", "amount_received": 10000})
        ).encode()

        response = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign(payload), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert response.json()["event_id"] == "evt_1"
        result = await db.execute(
            select(Sale).where(Sale.id == sale.id).execution_options(populate_existing=True)
        )
        assert result.scalar_one().status == "succeeded"


class TestMonitoringEndpoints:
    """Test suite for health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_unhealthy(self, client, monkeypatch) -> None:
        health_check = MagicMock()
        health_check.readiness = AsyncMock(
            return_value={"status": "unhealthy", "checks": {"redis": {"status": "unhealthy"}}}
        )
        monkeypatch.setattr(routes, "health_check", health_check)

        response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
