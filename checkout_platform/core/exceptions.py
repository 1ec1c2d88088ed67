"""
Domain exceptions for the checkout platform.

Every exception carries:
- Error code (for client handling)
- User message (safe to show to buyers and producers)
- HTTP status code (for API responses)
"""
from typing import Any, Dict, Optional


class CheckoutPlatformError(Exception):
    """Base exception for all domain errors."""

    error_code = "internal_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        user_message: Optional[str] = None,
        http_status: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        self.user_message = user_message or message
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


class NotFoundError(CheckoutPlatformError):
    error_code = "not_found"
    http_status = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} {identifier} not found",
            user_message=f"{resource} not found",
            resource=resource,
            identifier=identifier,
        )


class PermissionDeniedError(CheckoutPlatformError):
    error_code = "permission_denied"
    http_status = 403


class DomainValidationError(CheckoutPlatformError):
    error_code = "validation_error"
    http_status = 400


class ConflictError(CheckoutPlatformError):
    error_code = "conflict"
    http_status = 409


class ProducerNotVerifiedError(CheckoutPlatformError):
    """Raised when a producer without approved KYC tries to sell."""

    error_code = "kyc_required"
    http_status = 403

    def __init__(self, user_id: int, kyc_status: str):
        super().__init__(
            f"User {user_id} has KYC status {kyc_status}",
            user_message="Identity verification must be approved before selling.",
            user_id=user_id,
            kyc_status=kyc_status,
        )
        self.kyc_status = kyc_status


class ProductUnavailableError(CheckoutPlatformError):
    error_code = "product_unavailable"
    http_status = 409


class InvalidOrderBumpError(DomainValidationError):
    error_code = "invalid_order_bump"


class CouponRejectedError(DomainValidationError):
    """Raised when a coupon cannot be applied to an order."""

    error_code = "coupon_rejected"

    def __init__(self, reason: str, message: str):
        super().__init__(message, reason=reason)
        self.reason = reason


class OfferUnavailableError(ConflictError):
    error_code = "offer_unavailable"


class SplitConfigurationError(CheckoutPlatformError):
    """Raised when split percentages cannot be honoured."""

    error_code = "split_configuration_error"
    http_status = 422


class CheckoutInProgressError(ConflictError):
    error_code = "checkout_in_progress"


class CheckoutError(CheckoutPlatformError):
    """Raised when the processor rejects or fails a checkout."""

    error_code = "checkout_failed"
    http_status = 502


class RefundError(CheckoutPlatformError):
    error_code = "refund_failed"
    http_status = 409
