"""
Stripe Checkout adapter using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; calls run in a worker thread.
- Webhook verification is delegated to ``stripe.Webhook.construct_event``
  (HMAC over ``timestamp.payload`` with the endpoint secret, tolerance-checked).
- The session carries ``client_reference_id = order_id`` plus
  ``{orderId, userId, planType, days}`` metadata.
"""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from typing import Any, Mapping, Optional

import stripe

from application.dtos.payments import RedirectArtifact, WebhookAck
from core.settings import PaymentSettings
from domain.payment.entity import PaymentOrder, PaymentProvider
from domain.payment.events import IgnoredNotification, StripeCheckoutCompleted, VerifiedPayment
from domain.payment.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from infrastructure.external.payments.base import BasePaymentClient, json_ack, lower_headers

ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND"}

CHECKOUT_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


def _exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor(amount: Decimal, currency: str) -> int:
    return int((amount * (Decimal(10) ** _exponent(currency))).to_integral_value())


def from_minor(amount: int, currency: str) -> Decimal:
    return Decimal(amount) / (Decimal(10) ** _exponent(currency))


class StripeClient(BasePaymentClient):
    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
        tolerance_seconds: int = 300,
    ) -> None:
        super().__init__()
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._tolerance = tolerance_seconds

    @classmethod
    def from_settings(cls, settings: PaymentSettings, *, success_url: str, cancel_url: str) -> "StripeClient":
        return cls(
            secret_key=settings.stripe.secret_key or "",
            webhook_secret=settings.stripe.webhook_secret or "",
            success_url=success_url,
            cancel_url=cancel_url,
            tolerance_seconds=settings.webhook.tolerance_seconds,
        )

    def _wrap(self, exc: Exception) -> PaymentProviderError:
        if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError)):
            return PaymentRecoverableError(str(exc), provider=self.provider.value)
        code = getattr(exc, "code", None)
        return PaymentProviderError(str(exc), provider=self.provider.value, provider_code=code)

    async def create(self, order: PaymentOrder) -> RedirectArtifact:
        params: dict[str, Any] = dict(
            api_key=self._secret_key,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": order.currency.lower(),
                        "unit_amount": to_minor(order.amount, order.currency),
                        "product_data": {"name": f"Membership ({order.billing_cycle.value})"},
                    },
                    "quantity": 1,
                }
            ],
            client_reference_id=order.order_id,
            metadata={
                "orderId": order.order_id,
                "userId": order.user_id,
                "planType": order.billing_cycle.value,
                "days": str(order.billing_days),
            },
            success_url=f"{self._success_url}?orderId={order.order_id}&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self._cancel_url}?orderId={order.order_id}",
            idempotency_key=f"checkout-{order.order_id}",
        )
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as exc:
            raise self._wrap(exc) from exc
        self._log("stripe_checkout_created", order_id=order.order_id, session_id=session["id"])
        return RedirectArtifact(kind="redirect_url", payload=session["url"], provider_order_ref=session["id"])

    async def query(self, order: PaymentOrder) -> Optional[StripeCheckoutCompleted]:
        if not order.provider_order_ref:
            return None
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, order.provider_order_ref, api_key=self._secret_key
            )
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                return None
            raise self._wrap(exc) from exc
        except stripe.StripeError as exc:
            raise self._wrap(exc) from exc
        return self._from_session(json.loads(str(session)))

    async def verify(self, headers: Mapping[str, str], body: bytes) -> VerifiedPayment:
        sig = lower_headers(headers).get("stripe-signature")
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider.value)
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=self._webhook_secret,
                tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise PaymentSignatureError(str(exc), provider=self.provider.value) from exc
        except ValueError as exc:
            raise PaymentSignatureError(f"Invalid payload: {exc}", provider=self.provider.value) from exc

        event = json.loads(body)
        event_type = event.get("type", "")
        event_id = event.get("id")
        if event_type not in CHECKOUT_EVENTS:
            return IgnoredNotification(provider=self.provider, order_id=None, event_id=event_id, event_type=event_type)
        session = (event.get("data") or {}).get("object") or {}
        return self._from_session(session, event_type=event_type, event_id=event_id)

    def _from_session(
        self, session: dict, *, event_type: str = "", event_id: Optional[str] = None
    ) -> StripeCheckoutCompleted:
        metadata = session.get("metadata") or {}
        currency = (session.get("currency") or "").upper()
        amount_total = session.get("amount_total")
        return StripeCheckoutCompleted(
            provider=self.provider,
            order_id=session.get("client_reference_id") or metadata.get("orderId"),
            provider_transaction_id=session.get("payment_intent") or session.get("id"),
            paid_amount=from_minor(int(amount_total), currency) if amount_total is not None else None,
            paid_currency=currency,
            event_id=event_id,
            provider_order_ref=session.get("id"),
            event_type=event_type,
            payment_status=session.get("payment_status", ""),
            session_status=session.get("status", ""),
            raw=session,
        )

    def success_ack(self) -> WebhookAck:
        return json_ack({"received": True})

    def failure_ack(self, reason: str = "") -> WebhookAck:
        return json_ack({"received": False, "error": reason}, status_code=400)
