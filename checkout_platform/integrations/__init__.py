"""External integrations: Stripe and producer webhooks."""
from .notification_sink import ProducerWebhookDispatcher
from .stripe_client import StripeClient, StripeError
from .webhook_handler import WebhookHandler

__all__ = ["ProducerWebhookDispatcher", "StripeClient", "StripeError", "WebhookHandler"]
