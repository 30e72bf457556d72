from dataclasses import replace
from decimal import Decimal

import pytest

from domain.payment.entity import OrderStatus, PaymentProvider
from domain.payment.events import (
    AlipayTradeNotice,
    IgnoredNotification,
    PayPalCaptureCompleted,
    PayPalOrderApproved,
    WechatRefundNotice,
)
from domain.payment.exceptions import PaymentSignatureError


async def _pending(lifecycle, provider):
    result = await lifecycle.create_order("u1", "monthly", provider)
    return result.order.order_id


def _alipay_notice(order_id, amount="29.90", status="TRADE_SUCCESS", event_id="n1"):
    return AlipayTradeNotice(
        provider=PaymentProvider.ALIPAY,
        order_id=order_id,
        provider_transaction_id="2026TN1",
        paid_amount=Decimal(amount),
        paid_currency="CNY",
        event_id=event_id,
        trade_status=status,
    )


@pytest.mark.asyncio
async def test_verified_success_marks_paid(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "alipay")
    gateways.get("alipay").verify_result = _alipay_notice(order_id)

    ack = await webhook_service.handle("alipay", {}, b"body")

    assert ack.status_code == 200 and ack.body == {"ok": True}
    assert store.orders[order_id].status is OrderStatus.PAID


@pytest.mark.asyncio
async def test_redelivery_is_acknowledged_without_second_extension(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "alipay")
    gateways.get("alipay").verify_result = _alipay_notice(order_id)
    await webhook_service.handle("alipay", {}, b"body")
    end_date = store.subscriptions["u1"].end_date

    ack = await webhook_service.handle("alipay", {}, b"body")

    assert ack.status_code == 200
    assert store.subscriptions["u1"].end_date == end_date
    assert ("alipay", "n1") in store.webhook_events


@pytest.mark.asyncio
async def test_bad_signature_returns_failure_ack(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "alipay")
    gateways.get("alipay").verify_error = PaymentSignatureError("bad sign", provider="alipay")

    ack = await webhook_service.handle("alipay", {}, b"body")

    assert ack.status_code == 400
    assert store.orders[order_id].status is OrderStatus.PENDING
    assert not store.webhook_events


@pytest.mark.asyncio
async def test_amount_mismatch_is_acknowledged_and_flagged(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "alipay")
    gateways.get("alipay").verify_result = _alipay_notice(order_id, amount="0.01")

    ack = await webhook_service.handle("alipay", {}, b"body")

    assert ack.status_code == 200
    order = store.orders[order_id]
    assert order.status is OrderStatus.PENDING and order.needs_review


@pytest.mark.asyncio
async def test_closed_trade_marks_failed(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "alipay")
    gateways.get("alipay").verify_result = _alipay_notice(order_id, status="TRADE_CLOSED")

    await webhook_service.handle("alipay", {}, b"body")

    assert store.orders[order_id].status is OrderStatus.FAILED


@pytest.mark.asyncio
async def test_ignored_event_is_acknowledged(webhook_service, gateways):
    gateways.get("stripe").verify_result = IgnoredNotification(
        provider=PaymentProvider.STRIPE, order_id=None, event_id="evt_9", event_type="charge.refunded"
    )
    ack = await webhook_service.handle("stripe", {}, b"{}")
    assert ack.status_code == 200


@pytest.mark.asyncio
async def test_processing_error_asks_provider_to_retry(webhook_service, lifecycle, gateways, store, monkeypatch):
    order_id = await _pending(lifecycle, "alipay")
    gateways.get("alipay").verify_result = _alipay_notice(order_id)

    async def broken(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(lifecycle, "apply_paid_transition", broken)
    ack = await webhook_service.handle("alipay", {}, b"body")
    assert ack.status_code == 500


@pytest.mark.asyncio
async def test_paypal_approval_is_captured_then_applied(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "paypal")
    ref = store.orders[order_id].provider_order_ref
    gateway = gateways.get("paypal")
    gateway.verify_result = PayPalOrderApproved(
        provider=PaymentProvider.PAYPAL, order_id=order_id, event_id="WH-1", provider_order_ref=ref
    )
    gateway.capture_result = PayPalCaptureCompleted(
        provider=PaymentProvider.PAYPAL,
        order_id=order_id,
        provider_transaction_id="CAP-1",
        paid_amount=Decimal("4.99"),
        paid_currency="USD",
        provider_order_ref=ref,
        capture_status="COMPLETED",
    )

    ack = await webhook_service.handle("paypal", {}, b"{}")

    assert ack.status_code == 200
    assert gateway.captured == [ref]
    assert store.orders[order_id].status is OrderStatus.PAID
    assert ("paypal", "WH-1") in store.webhook_events


@pytest.mark.asyncio
async def test_paypal_pending_capture_does_not_pay(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "paypal")
    ref = store.orders[order_id].provider_order_ref
    gateway = gateways.get("paypal")
    gateway.verify_result = PayPalOrderApproved(
        provider=PaymentProvider.PAYPAL, order_id=order_id, event_id="WH-2", provider_order_ref=ref
    )
    gateway.capture_result = PayPalCaptureCompleted(
        provider=PaymentProvider.PAYPAL, order_id=order_id, provider_order_ref=ref, capture_status="PENDING"
    )

    await webhook_service.handle("paypal", {}, b"{}")

    assert store.orders[order_id].status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_full_refund_notification_marks_order_refunded(webhook_service, lifecycle, gateways, store):
    order_id = await _pending(lifecycle, "alipay")
    gateway = gateways.get("alipay")
    gateway.verify_result = _alipay_notice(order_id)
    await webhook_service.handle("alipay", {}, b"body")
    end_date = store.subscriptions["u1"].end_date

    partial = replace(_alipay_notice(order_id, event_id="n2"), refund_fee=Decimal("10.00"))
    gateway.verify_result = partial
    await webhook_service.handle("alipay", {}, b"body")
    assert store.orders[order_id].status is OrderStatus.PAID

    full = replace(_alipay_notice(order_id, status="TRADE_CLOSED", event_id="n3"), refund_fee=Decimal("29.90"))
    assert full.refunded and not full.failed
    gateway.verify_result = full
    ack = await webhook_service.handle("alipay", {}, b"body")

    assert ack.status_code == 200
    assert store.orders[order_id].status is OrderStatus.REFUNDED
    assert store.subscriptions["u1"].end_date == end_date


@pytest.mark.asyncio
async def test_refund_for_unknown_order_is_acknowledged(webhook_service, gateways):
    gateways.get("wechat").verify_result = WechatRefundNotice(
        provider=PaymentProvider.WECHAT, order_id="WXNOPE", event_id="r1", refund_status="SUCCESS"
    )
    ack = await webhook_service.handle("wechat", {}, b"body")
    assert ack.status_code == 200
