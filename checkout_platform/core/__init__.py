"""Core checkout, split and settlement logic."""
from .checkout import CheckoutService
from .idempotency import IdempotencyManager
from .outbox import OutboxPublisher
from .reconciliation import ReconciliationEngine
from .settlement import SettlementEngine

__all__ = [
    "CheckoutService",
    "IdempotencyManager",
    "OutboxPublisher",
    "ReconciliationEngine",
    "SettlementEngine",
]
