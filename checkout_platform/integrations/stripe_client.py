"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotent PaymentIntent creation
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from checkout_platform.config import get_settings
from checkout_platform.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != StripeErrorType.PERMANENT


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops sending requests for `timeout` seconds once `failure_threshold`
    consecutive calls have failed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

        try:
            result = func()
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")
        metrics.set_circuit_breaker_state(self.state)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )
        metrics.set_circuit_breaker_state(self.state)


class StripeClient:
    """
    Wrapper for the Stripe API.

    Blocking SDK calls run in the default executor behind a circuit
    breaker; SDK errors are classified into StripeError.
    """

    def __init__(self) -> None:
        """Initialize Stripe client."""
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, error: stripe.StripeError) -> StripeError:
        error_type = self._classify_error(error)
        metrics.record_stripe_api_error(error_type.value)

        logger.error(
            "stripe_api_error",
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=getattr(error, "user_message", None) or str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run a blocking SDK call through the circuit breaker."""
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            metrics.record_stripe_api_call(operation, "error", time.time() - start_time)
            raise self._handle_stripe_error(e) from e
        metrics.record_stripe_api_call(operation, "success", time.time() - start_time)
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        reraise=True,
    )
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        transfer_group: Optional[str] = None,
        receipt_email: Optional[str] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            amount_cents: Amount in cents
            currency: Currency code (e.g., 'usd')
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata
            transfer_group: Groups the transfers of one sale's splits
            receipt_email: Buyer email for Stripe receipts

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeError: If payment creation fails
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            params: Dict[str, Any] = {
                "amount": amount_cents,
                "currency": currency.lower(),
                "idempotency_key": idempotency_key,
                "metadata": metadata or {},
                "automatic_payment_methods": {"enabled": True},
            }
            if transfer_group:
                params["transfer_group"] = transfer_group
            if receipt_email:
                params["receipt_email"] = receipt_email
            return stripe.PaymentIntent.create(**params)

        payment_intent = await self._call("create_payment_intent", _create)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """
        Retrieve a PaymentIntent by ID.

        Raises:
            StripeError: If retrieval fails
        """
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)
        return await self._call(
            "retrieve_payment_intent",
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
        )

    async def create_refund(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Create a full refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            reason: Optional refund reason
            idempotency_key: Optional idempotency key

        Returns:
            stripe.Refund: Created refund

        Raises:
            StripeError: If refund creation fails
        """
        logger.info("creating_refund", payment_intent_id=payment_intent_id)

        def _create_refund() -> stripe.Refund:
            params: Dict[str, Any] = {"payment_intent": payment_intent_id}
            if reason:
                params["reason"] = reason
            if idempotency_key:
                params["idempotency_key"] = idempotency_key
            return stripe.Refund.create(**params)

        refund = await self._call("create_refund", _create_refund)

        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return refund

    async def list_payment_intents(
        self,
        limit: int = 100,
        starting_after: Optional[str] = None,
        created_gte: Optional[int] = None,
        created_lt: Optional[int] = None,
    ) -> stripe.ListObject:
        """
        List PaymentIntents with pagination.

        Args:
            limit: Number of items to return
            starting_after: Cursor for pagination
            created_gte: Filter by creation time (greater than or equal)
            created_lt: Filter by creation time (strictly less than)

        Raises:
            StripeError: If listing fails
        """
        logger.info("listing_payment_intents", limit=limit, starting_after=starting_after)

        def _list() -> stripe.ListObject:
            params: Dict[str, Any] = {"limit": limit}
            if starting_after:
                params["starting_after"] = starting_after
            created: Dict[str, int] = {}
            if created_gte is not None:
                created["gte"] = created_gte
            if created_lt is not None:
                created["lt"] = created_lt
            if created:
                params["created"] = created
            return stripe.PaymentIntent.list(**params)

        return await self._call("list_payment_intents", _list)

