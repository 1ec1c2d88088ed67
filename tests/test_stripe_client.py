"""
Tests for the Stripe client wrapper.
"""
from unittest.mock import MagicMock

import pytest
import stripe
from tenacity import wait_none

from checkout_platform.integrations.stripe_client import (
    CircuitBreaker,
    StripeClient,
    StripeError,
    StripeErrorType,
)


@pytest.fixture
def stripe_client() -> StripeClient:
    return StripeClient()


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(StripeClient.create_payment_intent.retry, "wait", wait_none())


class TestErrorClassification:
    """Test suite for StripeClient._classify_error."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error,expected",
        [
            (stripe.RateLimitError("slow down"), StripeErrorType.RATE_LIMIT),
            (stripe.APIConnectionError("network"), StripeErrorType.TRANSIENT),
            (stripe.APIError("server"), StripeErrorType.TRANSIENT),
            (stripe.CardError("declined", None, "card_declined"), StripeErrorType.PERMANENT),
            (stripe.InvalidRequestError("bad param", "amount"), StripeErrorType.PERMANENT),
            (stripe.AuthenticationError("bad key"), StripeErrorType.PERMANENT),
        ],
    )
    def test_classify(self, error, expected) -> None:
        assert StripeClient._classify_error(error) == expected

    @pytest.mark.unit
    def test_only_permanent_errors_are_final(self) -> None:
        assert StripeError("x", StripeErrorType.RATE_LIMIT).retryable
        assert StripeError("x", StripeErrorType.TRANSIENT).retryable
        assert not StripeError("x", StripeErrorType.PERMANENT).retryable


class TestStripeCalls:
    """Test suite for the SDK call wrappers."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_intent(self, stripe_client, mocker) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            return_value=MagicMock(id="pi_1", status="requires_payment_method"),
        )

        payment_intent = await stripe_client.create_payment_intent(
            amount_cents=10000,
            currency="USD",
            idempotency_key="checkout:auto:abc",
            metadata={"sale_id": "1"},
            transfer_group="sale_1",
            receipt_email="buyer@example.com",
        )

        assert payment_intent.id == "pi_1"
        create.assert_called_once_with(
            amount=10000,
            currency="usd",
            idempotency_key="checkout:auto:abc",
            metadata={"sale_id": "1"},
            automatic_payment_methods={"enabled": True},
            transfer_group="sale_1",
            receipt_email="buyer@example.com",
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_not_retried(self, stripe_client, mocker, no_backoff) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
        )

        with pytest.raises(StripeError) as exc_info:
            await stripe_client.create_payment_intent(10000, "usd", "key-1")

        assert exc_info.value.error_type == StripeErrorType.PERMANENT
        assert isinstance(exc_info.value.original_error, stripe.CardError)
        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_retried(self, stripe_client, mocker, no_backoff) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            side_effect=[
                stripe.APIConnectionError("network"),
                stripe.APIConnectionError("network"),
                MagicMock(id="pi_1", status="requires_payment_method"),
            ],
        )

        payment_intent = await stripe_client.create_payment_intent(10000, "usd", "key-1")

        assert payment_intent.id == "pi_1"
        assert create.call_count == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_refund(self, stripe_client, mocker) -> None:
        create = mocker.patch(
            "stripe.Refund.create", return_value=MagicMock(id="re_1", status="succeeded")
        )

        refund = await stripe_client.create_refund(
            "pi_1", reason="requested_by_customer", idempotency_key="refund:1"
        )

        assert refund.id == "re_1"
        create.assert_called_once_with(
            payment_intent="pi_1", reason="requested_by_customer", idempotency_key="refund:1"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_payment_intents_window(self, stripe_client, mocker) -> None:
        list_call = mocker.patch("stripe.PaymentIntent.list", return_value=MagicMock())

        await stripe_client.list_payment_intents(
            limit=50, starting_after="pi_9", created_gte=100, created_lt=200
        )

        list_call.assert_called_once_with(
            limit=50, starting_after="pi_9", created={"gte": 100, "lt": 200}
        )


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold_and_recovers(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60, success_threshold=2)
        failing = MagicMock(side_effect=RuntimeError("boom"))

        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(failing)
        assert breaker.state == "open"

        probe = MagicMock(return_value="ok")
        with pytest.raises(StripeError, match="Circuit breaker is open"):
            breaker.call(probe)
        probe.assert_not_called()

        breaker.last_failure_time -= 61
        assert breaker.call(probe) == "ok"
        assert breaker.state == "half_open"
        breaker.call(probe)
        assert breaker.state == "closed"
