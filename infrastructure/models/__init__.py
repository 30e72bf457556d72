"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentOrderModel, SubscriptionModel, WebhookEventModel

__all__ = [
    "Base",
    "metadata",
    "PaymentOrderModel",
    "SubscriptionModel",
    "WebhookEventModel",
]
