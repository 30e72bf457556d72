import json
from decimal import Decimal
from urllib.parse import urlencode

import pytest
from cryptography.hazmat.primitives import serialization

from application.ports.payment_gateway import GatewayRegistry
from application.services.order_lifecycle_service import OrderLifecycleService
from application.services.webhook_service import WebhookIngestionService
from domain.payment.entity import OrderStatus, PaymentOrder, PaymentProvider
from domain.payment.exceptions import PaymentProviderError, PaymentSignatureError
from domain.payment.pricing import PricingTable
from infrastructure.external.payments.alipay_client import AlipayClient, signing_string

from conftest import RecordingNotifier, sign_sha256

APP_ID = "2021000000000001"


@pytest.fixture
def alipay_public_pem(other_rsa_key):
    return other_rsa_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()


@pytest.fixture
def sdk(rsa_key, alipay_public_pem):
    # merchant signs requests with rsa_key; Alipay signs notifications with other_rsa_key
    merchant_pem = rsa_key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.TraditionalOpenSSL, serialization.NoEncryption()
    ).decode()
    return AlipayClient.build_sdk(
        server_url="https://openapi-sandbox.dl.alipaydev.com/gateway.do",
        app_id=APP_ID,
        app_private_key=merchant_pem,
        alipay_public_key=alipay_public_pem,
        sign_type="RSA2",
    )


@pytest.fixture
def client(sdk, alipay_public_pem):
    return AlipayClient(
        sdk=sdk,
        app_id=APP_ID,
        alipay_public_key=alipay_public_pem,
        notify_url="https://api.example.com/api/v1/payments/webhooks/alipay",
        return_url="https://app.example.com/payment/result",
    )


@pytest.fixture
def wired(client, uow_factory, clock):
    registry = GatewayRegistry({PaymentProvider.ALIPAY: client})
    pricing = PricingTable(prices={"CNY": {"monthly": Decimal("29.90")}})
    lifecycle = OrderLifecycleService(uow_factory, registry, pricing, RecordingNotifier(), clock=clock)
    return lifecycle, WebhookIngestionService(registry, lifecycle)


def _notification(alipay_key, order_id, *, total="29.90", status="TRADE_SUCCESS", app_id=APP_ID,
                  sign_type="RSA2", notify_id="ac05099524730693a8b330c5ecf72da9786", **extra):
    params = {
        "notify_id": notify_id,
        "notify_type": "trade_status_sync",
        "notify_time": "2026-01-01 20:00:05",
        "app_id": app_id,
        "charset": "utf-8",
        "version": "1.0",
        "out_trade_no": order_id,
        "trade_no": "2026010122001",
        "trade_status": status,
        "total_amount": total,
        "buyer_logon_id": "159****5620",
        "passback_params": "",
        **extra,
    }
    params["sign"] = sign_sha256(alipay_key, signing_string(params))
    params["sign_type"] = sign_type
    return urlencode(params).encode()


def test_signing_string_sorts_and_skips_empty_values():
    params = {"b": "2", "a": "1", "sign": "x", "sign_type": "RSA2", "empty": ""}
    assert signing_string(params) == "a=1&b=2"


@pytest.mark.asyncio
async def test_create_renders_form(wired):
    lifecycle, _ = wired
    result = await lifecycle.create_order("u1", "monthly", "alipay")

    assert result.artifact.kind == "form_html"
    assert "<form" in result.artifact.payload
    assert result.order.order_id in result.artifact.payload


@pytest.mark.asyncio
async def test_notification_marks_order_paid(wired, other_rsa_key, store):
    lifecycle, webhooks = wired
    order_id = (await lifecycle.create_order("u1", "monthly", "alipay")).order.order_id

    ack = await webhooks.handle("alipay", {}, _notification(other_rsa_key, order_id))

    assert (ack.status_code, ack.body, ack.media_type) == (200, "success", "text/plain")
    assert store.orders[order_id].status is OrderStatus.PAID


@pytest.mark.asyncio
async def test_full_refund_notification_marks_order_refunded(wired, other_rsa_key, store):
    lifecycle, webhooks = wired
    order_id = (await lifecycle.create_order("u1", "monthly", "alipay")).order.order_id
    await webhooks.handle("alipay", {}, _notification(other_rsa_key, order_id))

    body = _notification(
        other_rsa_key, order_id, status="TRADE_CLOSED", notify_id="refund-notify-1", refund_fee="29.90"
    )
    ack = await webhooks.handle("alipay", {}, body)

    assert ack.body == "success"
    assert store.orders[order_id].status is OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_overpaid_notification_is_rejected(wired, other_rsa_key, store):
    lifecycle, webhooks = wired
    order_id = (await lifecycle.create_order("u1", "monthly", "alipay")).order.order_id

    await webhooks.handle("alipay", {}, _notification(other_rsa_key, order_id, total="29.92"))

    assert store.orders[order_id].status is OrderStatus.PENDING
    assert store.subscriptions == {}


@pytest.mark.asyncio
async def test_tampered_notification_fails(client, other_rsa_key):
    body = _notification(other_rsa_key, "ALI123").replace(b"29.90", b"0.01")
    with pytest.raises(PaymentSignatureError):
        await client.verify({}, body)
    assert client.failure_ack().body == "fail"


@pytest.mark.asyncio
async def test_notification_signed_by_merchant_key_fails(client, rsa_key):
    with pytest.raises(PaymentSignatureError, match="signature"):
        await client.verify({}, _notification(rsa_key, "ALI123"))


@pytest.mark.asyncio
async def test_unexpected_sign_type_is_rejected(client, other_rsa_key):
    with pytest.raises(PaymentSignatureError, match="sign_type"):
        await client.verify({}, _notification(other_rsa_key, "ALI123", sign_type="RSA"))


@pytest.mark.asyncio
async def test_notification_for_other_app_is_rejected(client, other_rsa_key):
    with pytest.raises(PaymentSignatureError, match="app_id"):
        await client.verify({}, _notification(other_rsa_key, "ALI123", app_id="2021999999999999"))


@pytest.mark.asyncio
async def test_missing_sign_is_rejected(client):
    with pytest.raises(PaymentSignatureError):
        await client.verify({}, b"out_trade_no=ALI1&trade_status=TRADE_SUCCESS")


def _order(order_id):
    return PaymentOrder(
        id=None, order_id=order_id, provider="alipay", user_id="u1",
        amount=Decimal("29.90"), currency="CNY", billing_days=30, billing_cycle="monthly",
    )


@pytest.mark.asyncio
async def test_trade_query(client, sdk, monkeypatch):
    def execute(request):
        out_trade_no = request.biz_content.out_trade_no
        if out_trade_no.endswith("MISSING"):
            body = {"code": "40004", "msg": "Business Failed", "sub_code": "ACQ.TRADE_NOT_EXIST"}
        elif out_trade_no.endswith("BROKEN"):
            body = {"code": "20000", "msg": "Service Currently Unavailable", "sub_code": "isp.unknow-error"}
        else:
            body = {
                "code": "10000",
                "msg": "Success",
                "out_trade_no": out_trade_no,
                "trade_no": "2026010122001",
                "trade_status": "TRADE_SUCCESS",
                "total_amount": "29.90",
            }
        return json.dumps(body)

    monkeypatch.setattr(sdk, "execute", execute)

    notice = await client.query(_order("ALI1"))
    assert notice.succeeded and notice.paid_amount == Decimal("29.90")
    assert await client.query(_order("ALIMISSING")) is None
    with pytest.raises(PaymentProviderError):
        await client.query(_order("ALIBROKEN"))
