import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

stripe = pytest.importorskip("stripe")

from application.ports.payment_gateway import GatewayRegistry
from application.services.order_lifecycle_service import OrderLifecycleService
from application.services.webhook_service import WebhookIngestionService
from domain.payment.entity import OrderStatus, PaymentProvider
from domain.payment.events import IgnoredNotification
from domain.payment.exceptions import PaymentSignatureError
from domain.payment.pricing import PricingTable
from infrastructure.external.payments.stripe_client import StripeClient, from_minor, to_minor

from conftest import RecordingNotifier

WEBHOOK_SECRET = "whsec_test_secret"


def _signed(payload: dict, *, secret=WEBHOOK_SECRET, ts=None):
    body = json.dumps(payload)
    ts = int(time.time()) if ts is None else ts
    mac = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={mac}"}, body.encode()


def _session_event(order_id, *, amount_total=499, event_type="checkout.session.completed", payment_status="paid"):
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "client_reference_id": order_id,
                "payment_intent": "pi_1",
                "amount_total": amount_total,
                "currency": "usd",
                "payment_status": payment_status,
                "status": "complete",
                "metadata": {"orderId": order_id, "userId": "u1", "planType": "monthly", "days": "30"},
            }
        },
    }


@pytest.fixture
def client():
    return StripeClient(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        success_url="https://app.example.com/payment/result",
        cancel_url="https://app.example.com/payment/cancel",
    )


@pytest.fixture
def wired(client, uow_factory, clock, monkeypatch):
    calls = []

    def fake_create(**params):
        calls.append(params)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", staticmethod(fake_create))
    registry = GatewayRegistry({PaymentProvider.STRIPE: client})
    pricing = PricingTable(prices={"USD": {"monthly": Decimal("4.99")}})
    lifecycle = OrderLifecycleService(uow_factory, registry, pricing, RecordingNotifier(), clock=clock)
    return lifecycle, WebhookIngestionService(registry, lifecycle), calls


def test_minor_unit_conversion():
    assert to_minor(Decimal("4.99"), "USD") == 499
    assert to_minor(Decimal("500"), "JPY") == 500
    assert from_minor(499, "usd") == Decimal("4.99")


@pytest.mark.asyncio
async def test_checkout_completed_marks_paid(wired, store):
    lifecycle, webhooks, calls = wired
    created = await lifecycle.create_order("u1", "monthly", "stripe")
    order_id = created.order.order_id
    assert created.artifact.payload.startswith("https://checkout.stripe.com/")
    assert calls[0]["client_reference_id"] == order_id
    assert calls[0]["idempotency_key"] == f"checkout-{order_id}"
    assert calls[0]["line_items"][0]["price_data"]["unit_amount"] == 499
    assert store.orders[order_id].provider_order_ref == "cs_test_1"

    headers, body = _signed(_session_event(order_id))
    ack = await webhooks.handle("stripe", headers, body)

    assert ack.status_code == 200 and ack.body == {"received": True}
    assert store.orders[order_id].status is OrderStatus.PAID
    assert store.orders[order_id].provider_transaction_id == "pi_1"


@pytest.mark.asyncio
async def test_wrong_secret_is_rejected(client):
    headers, body = _signed(_session_event("STR1"), secret="whsec_other")
    with pytest.raises(PaymentSignatureError):
        await client.verify(headers, body)


@pytest.mark.asyncio
async def test_stale_signature_is_rejected(client):
    headers, body = _signed(_session_event("STR1"), ts=int(time.time()) - 3600)
    with pytest.raises(PaymentSignatureError):
        await client.verify(headers, body)


@pytest.mark.asyncio
async def test_unpaid_async_session_does_not_pay(wired, store):
    lifecycle, webhooks, _ = wired
    order_id = (await lifecycle.create_order("u1", "monthly", "stripe")).order.order_id
    headers, body = _signed(_session_event(order_id, payment_status="unpaid"))

    await webhooks.handle("stripe", headers, body)

    assert store.orders[order_id].status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_other_event_types_are_ignored(client):
    headers, body = _signed({"id": "evt_2", "type": "charge.refunded", "data": {"object": {}}})
    verified = await client.verify(headers, body)
    assert isinstance(verified, IgnoredNotification)
    assert verified.event_type == "charge.refunded"
