"""
API routes for the checkout platform.
"""
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_platform.config import get_settings
from checkout_platform.core.attribution import AttributionService
from checkout_platform.core.balance import BalanceService
from checkout_platform.core.catalog import CatalogService
from checkout_platform.core.checkout import CheckoutRequest, CheckoutService
from checkout_platform.core.coupons import CouponService
from checkout_platform.core.exceptions import NotFoundError
from checkout_platform.core.reconciliation import ReconciliationEngine, ReconciliationError
from checkout_platform.core.sales import SalesService
from checkout_platform.database.connection import get_db
from checkout_platform.database.models import Course, User, utcnow
from checkout_platform.integrations.webhook_handler import WebhookError, WebhookHandler
from checkout_platform.monitoring.health import HealthCheck

from .dependencies import get_current_user, require_admin
from .schemas import (
    AffiliateApplicationRequest,
    AffiliateApplicationResponse,
    AffiliateLinkRequest,
    AffiliateLinkResponse,
    AffiliateRequest,
    AffiliateResponse,
    BalanceResponse,
    CheckoutRequestSchema,
    CheckoutResponse,
    CoProducerRequest,
    CoProducerResponse,
    CouponResponse,
    CouponValidationResponse,
    CourseResponse,
    CreateCouponRequest,
    CreateCourseRequest,
    CreateUserRequest,
    HealthCheckResponse,
    KycUpdateRequest,
    NotificationResponse,
    OfferRequest,
    OfferResponse,
    OrderBumpRequest,
    OrderBumpResponse,
    QuoteResponse,
    ReconcileRequest,
    ReconciliationResponse,
    RefundRequest,
    RefundResponse,
    SaleDetailResponse,
    SalesLinkRequest,
    SalesLinkResponse,
    SaleStatusRequest,
    TransitionResponse,
    UserResponse,
    ValidateCouponRequest,
    WebhookResponse,
    WebhookSubscriptionRequest,
    WebhookSubscriptionResponse,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

# Create routers
catalog_router = APIRouter(tags=["catalog"])
affiliate_router = APIRouter(tags=["affiliates"])
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
sales_router = APIRouter(tags=["sales"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
catalog_service = CatalogService()
coupon_service = CouponService()
attribution_service = AttributionService()
checkout_service = CheckoutService(
    coupon_service=coupon_service, attribution_service=attribution_service
)
sales_service = SalesService(
    stripe_client=checkout_service.stripe_client,
    settlement_engine=checkout_service.settlement_engine,
)
balance_service = BalanceService()
webhook_handler = WebhookHandler(settlement_engine=checkout_service.settlement_engine)
health_check = HealthCheck()
reconciliation_engine = ReconciliationEngine(
    stripe_client=checkout_service.stripe_client,
    settlement_engine=checkout_service.settlement_engine,
)


def _checkout_request(request: CheckoutRequestSchema, http_request: Request) -> CheckoutRequest:
    return CheckoutRequest(
        buyer_email=request.buyer_email,
        course_id=request.course_id,
        sales_link_id=request.sales_link_id,
        offer_link_id=request.offer_link_id,
        order_bump_ids=request.order_bump_ids,
        coupon_code=request.coupon_code,
        buyer_name=request.buyer_name,
        buyer_address=request.buyer_address,
        payment_method=request.payment_method,
        session_id=request.session_id
        or http_request.cookies.get(settings.affiliate_session_cookie),
    )


# Users


@catalog_router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a user",
)
async def create_user(
    request: CreateUserRequest, db: AsyncSession = Depends(get_db)
) -> User:
    user = await catalog_service.create_user(db, request.email, request.name)
    await db.commit()
    return user


@catalog_router.get("/users/me", response_model=UserResponse, summary="Current user")
async def get_me(user: User = Depends(get_current_user)) -> User:
    return user


@catalog_router.get(
    "/notifications",
    response_model=List[NotificationResponse],
    summary="Caller's notifications",
)
async def list_notifications(
    unread_only: bool = False,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    return await catalog_service.list_notifications(db, user, unread_only=unread_only)


# Courses


@catalog_router.post(
    "/courses",
    response_model=CourseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a course",
    description="Requires approved KYC",
)
async def create_course(
    request: CreateCourseRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    course = await catalog_service.create_course(
        db,
        user,
        title=request.title,
        price_cents=request.price_cents,
        description=request.description,
        currency=request.currency,
        allows_affiliates=request.allows_affiliates,
        default_affiliate_commission=request.default_affiliate_commission,
    )
    await db.commit()
    return course


@catalog_router.post(
    "/courses/{course_id}/co-producers",
    response_model=CoProducerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a co-producer",
)
async def add_co_producer(
    course_id: int,
    request: CoProducerRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    co_producer = await catalog_service.add_co_producer(
        db, user, course_id, request.user_id, request.percentage
    )
    await db.commit()
    return co_producer


@catalog_router.delete(
    "/courses/{course_id}/co-producers/{co_producer_id}",
    response_model=CoProducerResponse,
    summary="Deactivate a co-producer",
)
async def remove_co_producer(
    course_id: int,
    co_producer_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    co_producer = await catalog_service.remove_co_producer(db, user, course_id, co_producer_id)
    await db.commit()
    return co_producer


@catalog_router.post(
    "/courses/{course_id}/affiliates",
    response_model=AffiliateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add an affiliate",
)
async def add_affiliate(
    course_id: int,
    request: AffiliateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    affiliate = await catalog_service.add_affiliate(
        db, user, course_id, request.user_id, request.commission_percentage
    )
    await db.commit()
    return affiliate


@catalog_router.post(
    "/courses/{course_id}/order-bumps",
    response_model=OrderBumpResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add an order bump",
)
async def create_order_bump(
    course_id: int,
    request: OrderBumpRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    bump = await catalog_service.create_order_bump(
        db,
        user,
        course_id,
        title=request.title,
        price_cents=request.price_cents,
        description=request.description,
        position=request.position,
    )
    await db.commit()
    return bump


@catalog_router.get(
    "/courses/{course_id}/order-bumps",
    response_model=List[OrderBumpResponse],
    summary="Order bumps offered at checkout",
)
async def list_order_bumps(course_id: int, db: AsyncSession = Depends(get_db)) -> Any:
    return await catalog_service.list_order_bumps(db, course_id)


# Coupons


@catalog_router.post(
    "/coupons",
    response_model=CouponResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a coupon",
)
async def create_coupon(
    request: CreateCouponRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    coupon = await catalog_service.create_coupon(
        db,
        user,
        request.course_id,
        code=request.code,
        discount_type=request.discount_type,
        percent_off=request.percent_off,
        amount_off_cents=request.amount_off_cents,
        min_order_cents=request.min_order_cents,
        max_discount_cents=request.max_discount_cents,
        valid_from=request.valid_from,
        valid_until=request.valid_until,
        usage_limit=request.usage_limit,
    )
    await db.commit()
    return coupon


@catalog_router.post(
    "/coupons/validate",
    response_model=CouponValidationResponse,
    summary="Validate a coupon",
    description="Public: check a code against a course before checkout",
)
async def validate_coupon(
    request: ValidateCouponRequest, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    order_value = request.order_value_cents
    if order_value is None:
        course = await db.get(Course, request.course_id)
        if course is None:
            raise NotFoundError("Course", request.course_id)
        order_value = course.price_cents

    evaluation = await coupon_service.validate(db, request.code, request.course_id, order_value)
    return evaluation.to_dict()


# Checkout links


@catalog_router.post(
    "/sales-links",
    response_model=SalesLinkResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a sales link",
)
async def create_sales_link(
    request: SalesLinkRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    link = await catalog_service.create_sales_link(
        db,
        user,
        request.course_id,
        title=request.title,
        custom_price_cents=request.custom_price_cents,
    )
    await db.commit()
    return link


@catalog_router.post(
    "/offers",
    response_model=OfferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an offer",
)
async def create_offer(
    request: OfferRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    offer = await catalog_service.create_offer(
        db,
        user,
        request.course_id,
        title=request.title,
        sale_price_cents=request.sale_price_cents,
        valid_from=request.valid_from,
        valid_until=request.valid_until,
        max_uses=request.max_uses,
    )
    await db.commit()
    return offer


@catalog_router.post(
    "/webhook-subscriptions",
    response_model=WebhookSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe to sale events",
)
async def create_webhook_subscription(
    request: WebhookSubscriptionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    webhook = await catalog_service.create_webhook_subscription(
        db, user, request.url, request.events
    )
    await db.commit()
    return webhook


# Affiliates


@affiliate_router.post(
    "/affiliate-applications",
    response_model=AffiliateApplicationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Apply to promote a course",
)
async def apply_for_affiliation(
    request: AffiliateApplicationRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    application = await catalog_service.apply_for_affiliation(
        db, user, request.course_id, request.message
    )
    await db.commit()
    return application


@affiliate_router.post(
    "/affiliate-applications/{application_id}/approve",
    response_model=AffiliateResponse,
    summary="Approve an affiliate application",
)
async def approve_application(
    application_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    affiliate = await catalog_service.approve_application(db, user, application_id)
    await db.commit()
    return affiliate


@affiliate_router.post(
    "/affiliate-applications/{application_id}/reject",
    response_model=AffiliateApplicationResponse,
    summary="Reject an affiliate application",
)
async def reject_application(
    application_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    application = await catalog_service.reject_application(db, user, application_id)
    await db.commit()
    return application


@affiliate_router.post(
    "/affiliate-links",
    response_model=AffiliateLinkResponse,
    summary="Get or create the caller's tracking link",
)
async def generate_affiliate_link(
    request: AffiliateLinkRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    link = await attribution_service.generate_link(db, user.id, request.course_id)
    await db.commit()
    return {
        "id": link.id,
        "link_id": link.link_id,
        "course_id": link.course_id,
        "affiliate_id": link.affiliate_id,
        "clicks": link.clicks,
        "sales": link.sales,
        "earnings_cents": link.earnings_cents,
        "url": f"{settings.public_base_url}/aff/{link.link_id}",
    }


@affiliate_router.get(
    "/aff/{link_id}",
    status_code=status.HTTP_302_FOUND,
    summary="Track an affiliate click",
    description="Records the click under the visitor's session and redirects to the checkout",
)
async def track_affiliate_click(
    link_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    cookie_name = settings.affiliate_session_cookie
    session_id = request.cookies.get(cookie_name) or uuid.uuid4().hex

    click = await attribution_service.record_click(
        db,
        link_id,
        session_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    await db.commit()

    response = RedirectResponse(
        url=f"{settings.public_base_url}/checkout?course_id={click.course_id}",
        status_code=status.HTTP_302_FOUND,
    )
    response.set_cookie(
        cookie_name,
        session_id,
        max_age=int(timedelta(days=settings.attribution_window_days).total_seconds()),
        httponly=True,
        samesite="lax",
    )
    return response


# Checkout


@checkout_router.post(
    "/quote",
    response_model=QuoteResponse,
    summary="Price a checkout",
    description="Itemized price and split without creating anything",
)
async def quote_checkout(
    request: CheckoutRequestSchema,
    http_request: Request,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await checkout_service.quote(db, _checkout_request(request, http_request))


@checkout_router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a checkout",
    description="Create a sale and its PaymentIntent. Idempotent per Idempotency-Key.",
)
async def create_checkout(
    request: CheckoutRequestSchema,
    http_request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Create a checkout.

    Duplicate submissions return the original checkout.
    """
    start_time = time.time()
    logger.info(
        "api_create_checkout_request",
        course_id=request.course_id,
        sales_link_id=request.sales_link_id,
        offer_link_id=request.offer_link_id,
        has_idempotency_key=idempotency_key is not None,
    )

    checkout = await checkout_service.create_checkout(
        db, _checkout_request(request, http_request), client_idempotency_key=idempotency_key
    )

    logger.info(
        "api_create_checkout_success",
        sale_id=checkout["sale_id"],
        status=checkout["status"],
        duration_seconds=time.time() - start_time,
    )
    return checkout


# Sales


@sales_router.get(
    "/sales/{sale_id}",
    response_model=SaleDetailResponse,
    summary="Sale with items and split",
)
async def get_sale(
    sale_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await sales_service.get_sale(db, sale_id, user)


@sales_router.post(
    "/sales/{sale_id}/status",
    response_model=TransitionResponse,
    summary="Manually update a sale's status",
)
async def update_sale_status(
    sale_id: int,
    request: SaleStatusRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    result = await sales_service.update_status(db, sale_id, user, request.status)
    return result.to_dict()


@sales_router.post(
    "/sales/{sale_id}/refund",
    response_model=RefundResponse,
    summary="Refund a sale",
    description="Full refund of a settled sale",
)
async def refund_sale(
    sale_id: int,
    request: RefundRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    logger.info("api_refund_sale_request", sale_id=sale_id, reason=request.reason)
    return await sales_service.refund(db, sale_id, user, request.reason)


@sales_router.get("/balance", response_model=BalanceResponse, summary="Caller's balance")
async def get_balance(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await balance_service.get_balance(db, user.id)


# Stripe webhooks


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Verifies signature and processes events with deduplication.
    """
    body = await request.body()

    try:
        event = webhook_handler.verify_signature(body, stripe_signature)
    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    logger.info("api_webhook_received", event_id=event["id"], event_type=event["type"])

    try:
        return await webhook_handler.process_event(event, db)
    except WebhookError as e:
        # 500 makes Stripe redeliver the event
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e


# Admin


@admin_router.patch(
    "/users/{user_id}/kyc",
    response_model=UserResponse,
    summary="Approve or reject KYC",
)
async def update_kyc(
    user_id: int,
    request: KycUpdateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Any:
    user = await catalog_service.set_kyc_status(
        db, admin, user_id, request.status, request.reason
    )
    await db.commit()
    return user


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Manually trigger reconciliation for a specific date",
)
async def run_reconciliation(
    request: ReconcileRequest,
    admin: User = Depends(require_admin),
) -> Dict[str, Any]:
    """
    Run reconciliation for a specific date.

    If no date provided, reconciles yesterday.
    """
    recon_date = request.reconciliation_date or (utcnow().date() - timedelta(days=1))
    logger.info(
        "api_reconciliation_started",
        date=recon_date.isoformat(),
        repair=request.repair,
        admin_id=admin.id,
    )

    try:
        result = await reconciliation_engine.reconcile_date(recon_date, repair=request.repair)
    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        ) from e

    logger.info(
        "api_reconciliation_completed",
        date=recon_date.isoformat(),
        discrepancies=len(result["discrepancies"]),
    )
    return result


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
