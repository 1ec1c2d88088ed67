"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def validate_email_address(value: str) -> str:
    value = value.strip().lower()
    local, _, domain = value.partition("@")
    if not local or "." not in domain:
        raise ValueError("Invalid email address")
    return value


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Users and KYC


class CreateUserRequest(BaseModel):
    email: str = Field(..., max_length=255)
    name: str = Field(..., min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Validate email shape."""
        return validate_email_address(v)


class UserResponse(ORMModel):
    id: int
    email: str
    name: str
    role: str
    kyc_status: str
    kyc_rejection_reason: Optional[str] = None
    is_active: bool


class KycUpdateRequest(BaseModel):
    status: Literal["pending", "approved", "rejected"]
    reason: Optional[str] = Field(default=None, description="Required when rejecting")


# Courses and collaborators


class CreateCourseRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price_cents: int = Field(..., ge=0, description="List price in cents")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    allows_affiliates: bool = False
    default_affiliate_commission: Decimal = Field(default=Decimal("0"), ge=0, le=100)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "title": "Sourdough Masterclass",
                    "price_cents": 9700,
                    "currency": "USD",
                    "allows_affiliates": True,
                    "default_affiliate_commission": "30.00",
                }
            ]
        }
    }


class CourseResponse(ORMModel):
    id: int
    producer_id: int
    title: str
    slug: str
    description: Optional[str] = None
    price_cents: int
    currency: str
    is_active: bool
    allows_affiliates: bool
    default_affiliate_commission: Decimal


class CoProducerRequest(BaseModel):
    user_id: int
    percentage: Decimal = Field(..., gt=0, le=100)


class CoProducerResponse(ORMModel):
    id: int
    course_id: int
    user_id: int
    percentage: Decimal
    is_active: bool


class AffiliateRequest(BaseModel):
    user_id: int
    commission_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)


class AffiliateResponse(ORMModel):
    id: int
    course_id: int
    user_id: int
    commission_percentage: Decimal
    is_active: bool


class AffiliateApplicationRequest(BaseModel):
    course_id: int
    message: Optional[str] = None


class AffiliateApplicationResponse(ORMModel):
    id: int
    course_id: int
    user_id: int
    message: Optional[str] = None
    status: str
    reviewed_at: Optional[datetime] = None


class AffiliateLinkRequest(BaseModel):
    course_id: int


class AffiliateLinkResponse(ORMModel):
    id: int
    link_id: str
    course_id: int
    affiliate_id: int
    clicks: int
    sales: int
    earnings_cents: int
    url: Optional[str] = None


class OrderBumpRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price_cents: int = Field(..., gt=0)
    position: int = 0


class OrderBumpResponse(ORMModel):
    id: int
    course_id: int
    title: str
    description: Optional[str] = None
    price_cents: int
    position: int


class CreateCouponRequest(BaseModel):
    course_id: int
    code: str = Field(..., min_length=1, max_length=64)
    discount_type: Literal["percentage", "fixed"]
    percent_off: Optional[Decimal] = Field(default=None, gt=0, le=100)
    amount_off_cents: Optional[int] = Field(default=None, gt=0)
    min_order_cents: Optional[int] = Field(default=None, ge=0)
    max_discount_cents: Optional[int] = Field(default=None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "course_id": 1,
                    "code": "LAUNCH20",
                    "discount_type": "percentage",
                    "percent_off": "20.00",
                    "usage_limit": 100,
                }
            ]
        }
    }


class CouponResponse(ORMModel):
    id: int
    course_id: int
    code: str
    discount_type: str
    percent_off: Optional[Decimal] = None
    amount_off_cents: Optional[int] = None
    min_order_cents: Optional[int] = None
    max_discount_cents: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = None
    used_count: int
    is_active: bool


class ValidateCouponRequest(BaseModel):
    code: str = Field(..., min_length=1)
    course_id: int
    order_value_cents: Optional[int] = Field(
        default=None, ge=0, description="Defaults to the course list price"
    )


class CouponValidationResponse(BaseModel):
    valid: bool
    coupon_id: Optional[int] = None
    code: Optional[str] = None
    discount_cents: int
    reason: Optional[str] = None
    message: Optional[str] = None


class SalesLinkRequest(BaseModel):
    course_id: int
    title: Optional[str] = Field(default=None, max_length=255)
    custom_price_cents: Optional[int] = Field(default=None, ge=0)


class SalesLinkResponse(ORMModel):
    id: int
    link_id: str
    course_id: int
    title: Optional[str] = None
    custom_price_cents: Optional[int] = None
    is_active: bool


class OfferRequest(BaseModel):
    course_id: int
    title: str = Field(..., min_length=1, max_length=255)
    sale_price_cents: int = Field(..., ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = Field(default=None, ge=1)


class OfferResponse(ORMModel):
    id: int
    link_id: str
    course_id: int
    title: str
    sale_price_cents: int
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = None
    current_uses: int
    is_active: bool


# Checkout


class CheckoutRequestSchema(BaseModel):
    """Request schema for pricing or creating a checkout."""

    course_id: Optional[int] = None
    sales_link_id: Optional[str] = None
    offer_link_id: Optional[str] = None
    order_bump_ids: List[int] = Field(default_factory=list)
    coupon_code: Optional[str] = None
    buyer_email: str = Field(..., max_length=255)
    buyer_name: Optional[str] = Field(default=None, max_length=255)
    buyer_address: Optional[Dict[str, Any]] = None
    payment_method: str = Field(default="card", max_length=30)
    session_id: Optional[str] = Field(
        default=None, max_length=64, description="Attribution session (defaults to the cookie)"
    )

    @field_validator("buyer_email")
    @classmethod
    def validate_buyer_email(cls, v: str) -> str:
        """Validate email shape."""
        return validate_email_address(v)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "course_id": 1,
                    "order_bump_ids": [3],
                    "coupon_code": "LAUNCH20",
                    "buyer_email": "buyer@example.com",
                    "buyer_name": "Ada Buyer",
                }
            ]
        }
    }


class CheckoutResponse(BaseModel):
    sale_id: int
    status: str
    currency: str
    subtotal_cents: int
    discount_cents: int
    amount_cents: int
    platform_fee_cents: int
    commission_cents: int
    affiliate_id: Optional[int] = None
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    idempotency_key: str
    created_at: str


class LineItemResponse(BaseModel):
    kind: str
    reference_id: int
    description: str
    amount_cents: int


class SplitLineResponse(BaseModel):
    party: str
    user_id: Optional[int] = None
    percentage: Optional[Decimal] = None
    amount_cents: int


class QuoteResponse(BaseModel):
    course_id: int
    currency: str
    list_price_cents: int
    base_price_cents: int
    items: List[LineItemResponse]
    bumps_cents: int
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    coupon_code: Optional[str] = None
    offer_id: Optional[int] = None
    sales_link_id: Optional[str] = None
    affiliate_id: Optional[int] = None
    splits: List[SplitLineResponse]


# Sales


class SaleResponse(ORMModel):
    id: int
    course_id: int
    producer_id: int
    buyer_email: str
    buyer_name: Optional[str] = None
    payment_method: str
    currency: str
    list_price_cents: int
    base_price_cents: int
    bumps_cents: int
    subtotal_cents: int
    discount_cents: int
    amount_cents: int
    platform_fee_cents: int
    commission_cents: int
    affiliate_id: Optional[int] = None
    status: str
    payment_intent_id: Optional[str] = None
    error_message: Optional[str] = None
    settled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class SaleItemResponse(ORMModel):
    kind: str
    reference_id: int
    description: str
    amount_cents: int


class SaleSplitResponse(ORMModel):
    party: str
    user_id: Optional[int] = None
    percentage: Optional[Decimal] = None
    amount_cents: int
    status: str


class SaleDetailResponse(BaseModel):
    sale: SaleResponse
    items: List[SaleItemResponse]
    splits: List[SaleSplitResponse]


class SaleStatusRequest(BaseModel):
    status: Literal["succeeded", "failed", "canceled", "refunded"]


class TransitionResponse(BaseModel):
    sale_id: int
    from_status: str
    to_status: str
    applied: bool
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    """Request schema for refunding a sale."""

    reason: Optional[Literal["requested_by_customer", "duplicate", "fraudulent"]] = None


class RefundResponse(BaseModel):
    sale_id: int
    refund_id: Optional[str] = None
    status: str
    amount_cents: int
    applied: bool


class BalanceResponse(BaseModel):
    user_id: int
    available_cents: int
    pending_cents: int
    reversed_cents: int
    by_role: Dict[str, Dict[str, int]]


# Webhooks and notifications


class WebhookSubscriptionRequest(BaseModel):
    url: str = Field(..., min_length=1)
    events: List[str] = Field(..., min_length=1)


class WebhookSubscriptionResponse(ORMModel):
    id: int
    url: str
    events: List[str]
    secret: str = Field(..., description="Signing secret, shown once")
    is_active: bool


class NotificationResponse(ORMModel):
    id: int
    type: str
    title: str
    message: str
    payload: Optional[Dict[str, Any]] = None
    is_read: bool
    created_at: datetime


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: str = Field(..., description="Stripe event ID")
    message: Optional[str] = Field(default=None, description="Status message")


# Operations


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ReconcileRequest(BaseModel):
    reconciliation_date: Optional[date] = Field(
        default=None, description="Day to reconcile (UTC), default yesterday"
    )
    repair: bool = Field(default=False, description="Apply missed status transitions")


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    date: str = Field(..., description="Reconciliation date")
    database_total_cents: int = Field(..., description="Total from database")
    database_count: int = Field(..., description="Count from database")
    stripe_total_cents: int = Field(..., description="Total from Stripe")
    stripe_count: int = Field(..., description="Count from Stripe")
    discrepancy_cents: int = Field(..., description="Amount discrepancy")
    discrepancy_count: int = Field(..., description="Count discrepancy")
    discrepancies: List[Dict[str, Any]] = Field(..., description="List of specific discrepancies")
