"""Database package for the checkout platform."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    AffiliateApplication,
    AffiliateLink,
    AffiliateLinkClick,
    Base,
    Coupon,
    Course,
    CourseAffiliate,
    CourseCoProducer,
    DailyAnalytics,
    Notification,
    Offer,
    OrderBump,
    OutboxEvent,
    ReconciliationStatus,
    Sale,
    SaleEvent,
    SaleItem,
    SaleSplit,
    SalesLink,
    User,
    Webhook,
    WebhookLog,
)

__all__ = [
    "Base",
    "User",
    "Course",
    "CourseCoProducer",
    "CourseAffiliate",
    "AffiliateApplication",
    "AffiliateLink",
    "AffiliateLinkClick",
    "SalesLink",
    "Offer",
    "Coupon",
    "OrderBump",
    "Sale",
    "SaleItem",
    "SaleSplit",
    "SaleEvent",
    "OutboxEvent",
    "DailyAnalytics",
    "Notification",
    "Webhook",
    "WebhookLog",
    "ReconciliationStatus",
    "get_db",
    "get_session_factory",
    "init_db",
]
