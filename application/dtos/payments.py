"""
Payment DTOs (Pydantic v2) used at application boundaries.

Views are serialized with camelCase aliases for the web client.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from domain.payment.entity import BillingCycle, OrderStatus, PaymentOrder, PaymentProvider
from domain.subscription.entity import Subscription, SubscriptionStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateOrderRequest(_CamelModel):
    provider: PaymentProvider
    plan: BillingCycle = BillingCycle.MONTHLY


class CaptureRequest(_CamelModel):
    provider: PaymentProvider = PaymentProvider.PAYPAL
    # PayPal returns ?token=<order id>; our own order id is accepted as well
    token: Optional[str] = None
    order_id: Optional[str] = None


class RedirectArtifact(_CamelModel):
    """What the client needs to continue payment out-of-band."""

    kind: Literal["qr_code", "form_html", "redirect_url"]
    payload: str
    provider_order_ref: Optional[str] = Field(default=None, exclude=True)


class WebhookAck(BaseModel):
    """Provider-mandated acknowledgement body."""

    status_code: int = 200
    body: Union[dict[str, Any], str]
    media_type: str = "application/json"


class OrderView(_CamelModel):
    order_id: str
    status: OrderStatus
    amount: Decimal
    currency: str
    provider: PaymentProvider
    billing_cycle: BillingCycle
    billing_days: int
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    needs_review: bool = False

    @classmethod
    def from_order(cls, order: PaymentOrder) -> "OrderView":
        return cls(
            order_id=order.order_id,
            status=order.status,
            amount=order.amount_major,
            currency=order.currency,
            provider=order.provider,
            billing_cycle=order.billing_cycle,
            billing_days=order.billing_days,
            created_at=order.created_at,
            paid_at=order.paid_at,
            needs_review=order.needs_review,
        )


class CreateOrderResult(_CamelModel):
    order: OrderView
    artifact: RedirectArtifact


class SubscriptionView(_CamelModel):
    plan: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    source_order_id: Optional[str] = None

    @classmethod
    def from_subscription(cls, sub: Subscription, now: Optional[datetime] = None) -> "SubscriptionView":
        return cls(
            plan=sub.plan,
            status=sub.effective_status(now),
            start_date=sub.start_date,
            end_date=sub.end_date,
            source_order_id=sub.source_order_id,
        )
