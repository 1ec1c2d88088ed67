"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CheckoutRequestSchema,
    CheckoutResponse,
    QuoteResponse,
    RefundRequest,
    RefundResponse,
    SaleDetailResponse,
)

__all__ = [
    "app",
    "CheckoutRequestSchema",
    "CheckoutResponse",
    "QuoteResponse",
    "RefundRequest",
    "RefundResponse",
    "SaleDetailResponse",
]
