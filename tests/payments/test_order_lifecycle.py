import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import OrderStatus, PaymentProvider
from domain.payment.events import PayPalCaptureCompleted, StripeCheckoutCompleted
from domain.payment.exceptions import (
    AmountMismatchError,
    DuplicateEventError,
    OrderNotFoundException,
    PaymentProviderError,
)


async def _create(lifecycle, provider="stripe", plan="monthly", user_id="u1"):
    result = await lifecycle.create_order(user_id, plan, provider)
    return result.order.order_id


@pytest.mark.asyncio
async def test_create_order_persists_pending_and_returns_artifact(lifecycle, store, gateways):
    result = await lifecycle.create_order("u1", "monthly", "stripe")
    order = store.orders[result.order.order_id]
    assert order.status is OrderStatus.PENDING
    assert order.amount == Decimal("4.99") and order.currency == "USD"
    assert order.provider_order_ref == f"ref-{order.order_id}"
    assert result.artifact.kind == "redirect_url"
    assert gateways.get("stripe").created == [order.order_id]


@pytest.mark.asyncio
async def test_create_order_provider_failure_leaves_order_pending(lifecycle, store, gateways):
    gateways.get("stripe").fail_create = True
    with pytest.raises(PaymentProviderError):
        await lifecycle.create_order("u1", "monthly", "stripe")
    (order,) = store.orders.values()
    assert order.status is OrderStatus.PENDING

    gateways.get("stripe").fail_create = False
    resumed = await lifecycle.resume_order(order.order_id, "u1")
    assert resumed.order.order_id == order.order_id


@pytest.mark.asyncio
async def test_resume_rejects_other_users_and_settled_orders(lifecycle):
    order_id = await _create(lifecycle)
    with pytest.raises(OrderNotFoundException):
        await lifecycle.resume_order(order_id, "someone-else")
    await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")
    with pytest.raises(DomainValidationException):
        await lifecycle.resume_order(order_id, "u1")


@pytest.mark.asyncio
async def test_paid_transition_extends_subscription_and_notifies(lifecycle, store, notifier, clock):
    order_id = await _create(lifecycle)
    result = await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")

    assert result.applied
    order = store.orders[order_id]
    assert order.status is OrderStatus.PAID
    assert order.provider_transaction_id == "pi_1"
    assert order.paid_at == clock.now
    sub = store.subscriptions["u1"]
    assert sub.end_date == clock.now + timedelta(days=30)
    assert notifier.paid == [order_id]


@pytest.mark.asyncio
async def test_repeated_event_is_applied_once(lifecycle, store):
    order_id = await _create(lifecycle)
    first = await lifecycle.apply_paid_transition(
        order_id, Decimal("4.99"), "USD", "pi_1", event=(PaymentProvider.STRIPE, "evt_1")
    )
    assert first.applied
    end_date = store.subscriptions["u1"].end_date

    for _ in range(3):
        with pytest.raises(DuplicateEventError):
            await lifecycle.apply_paid_transition(
                order_id, Decimal("4.99"), "USD", "pi_1", event=(PaymentProvider.STRIPE, "evt_1")
            )
    again = await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")
    assert not again.applied
    assert store.subscriptions["u1"].end_date == end_date


@pytest.mark.asyncio
async def test_concurrent_deliveries_extend_subscription_once(lifecycle, store, notifier, clock):
    order_id = await _create(lifecycle)
    results = await asyncio.gather(*[
        lifecycle.apply_paid_transition(
            order_id, Decimal("4.99"), "USD", f"pi_{i}", event=(PaymentProvider.STRIPE, f"evt_{i}")
        )
        for i in range(10)
    ])
    assert sum(r.applied for r in results) == 1
    assert store.subscriptions["u1"].end_date == clock.now + timedelta(days=30)
    assert notifier.paid == [order_id]


@pytest.mark.asyncio
async def test_second_order_stacks_on_active_subscription(lifecycle, store, clock):
    first = await _create(lifecycle)
    await lifecycle.apply_paid_transition(first, Decimal("4.99"), "USD", "pi_1")
    clock.advance(days=5)
    second = await _create(lifecycle, plan="yearly")
    await lifecycle.apply_paid_transition(second, Decimal("49.99"), "USD", "pi_2")
    sub = store.subscriptions["u1"]
    assert sub.end_date == clock.now - timedelta(days=5) + timedelta(days=30 + 365)
    assert sub.plan == "yearly"
    assert sub.source_order_id == second


@pytest.mark.asyncio
async def test_amount_mismatch_flags_order_without_paying(lifecycle, store, notifier):
    order_id = await _create(lifecycle)
    with pytest.raises(AmountMismatchError):
        await lifecycle.apply_paid_transition(order_id, Decimal("0.50"), "USD", "pi_1")
    order = store.orders[order_id]
    assert order.status is OrderStatus.PENDING
    assert order.needs_review
    assert "u1" not in store.subscriptions
    assert notifier.mismatches == [(order_id, "0.50", "USD")]


@pytest.mark.asyncio
async def test_currency_mismatch_is_a_mismatch(lifecycle, store):
    order_id = await _create(lifecycle)
    with pytest.raises(AmountMismatchError):
        await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "EUR", "pi_1")
    assert store.orders[order_id].status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_order_is_not_applied(lifecycle, store):
    result = await lifecycle.apply_paid_transition(
        "STRNOPE", Decimal("4.99"), "USD", "pi_1", event=(PaymentProvider.STRIPE, "evt_x")
    )
    assert not result.applied
    assert store.subscriptions == {}


@pytest.mark.asyncio
async def test_failed_order_cannot_be_paid(lifecycle, store):
    order_id = await _create(lifecycle)
    assert await lifecycle.mark_failed(order_id)
    result = await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")
    assert not result.applied
    assert store.orders[order_id].status is OrderStatus.FAILED


@pytest.mark.asyncio
async def test_refund_keeps_entitlement(lifecycle, store):
    order_id = await _create(lifecycle)
    await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")
    end_date = store.subscriptions["u1"].end_date

    assert await lifecycle.record_refund(order_id)
    assert store.orders[order_id].status is OrderStatus.REFUNDED
    assert store.subscriptions["u1"].end_date == end_date
    assert not await lifecycle.record_refund(order_id)


@pytest.mark.asyncio
async def test_apply_verified_matches_by_provider_reference(lifecycle, store):
    order_id = await _create(lifecycle)
    verified = StripeCheckoutCompleted(
        provider=PaymentProvider.STRIPE,
        order_id=None,
        provider_transaction_id="pi_1",
        paid_amount=Decimal("4.99"),
        paid_currency="USD",
        provider_order_ref=f"ref-{order_id}",
        payment_status="paid",
    )
    result = await lifecycle.apply_verified(verified)
    assert result.applied
    assert store.orders[order_id].status is OrderStatus.PAID


@pytest.mark.asyncio
async def test_notifier_failure_does_not_undo_transition(lifecycle, store, notifier):
    async def boom(order):
        raise RuntimeError("broker down")

    notifier.payment_succeeded = boom
    order_id = await _create(lifecycle)
    result = await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")
    assert result.applied
    assert store.orders[order_id].status is OrderStatus.PAID


@pytest.mark.asyncio
async def test_list_orders_and_subscription_view(lifecycle):
    order_id = await _create(lifecycle)
    await _create(lifecycle, user_id="u2")
    await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")

    views = await lifecycle.list_orders("u1")
    assert [v.order_id for v in views] == [order_id]
    sub = await lifecycle.current_subscription("u1")
    assert sub.status.value == "active"
    assert await lifecycle.current_subscription("u2") is None


@pytest.mark.asyncio
async def test_payment_verified_by_another_provider_is_not_applied(lifecycle, store):
    order_id = await _create(lifecycle, provider="stripe")
    result = await lifecycle.apply_verified(PayPalCaptureCompleted(
        provider=PaymentProvider.PAYPAL,
        order_id=order_id,
        provider_transaction_id="CAP-1",
        paid_amount=Decimal("4.99"),
        paid_currency="USD",
        capture_status="COMPLETED",
    ))
    assert not result.applied
    assert store.orders[order_id].status is OrderStatus.PENDING
    assert store.subscriptions == {}

    result = await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1", provider="stripe")
    assert result.applied


@pytest.mark.asyncio
async def test_refund_reported_by_another_provider_is_ignored(lifecycle, store):
    order_id = await _create(lifecycle, provider="stripe")
    await lifecycle.apply_paid_transition(order_id, Decimal("4.99"), "USD", "pi_1")
    assert not await lifecycle.record_refund(order_id, provider="paypal")
    assert store.orders[order_id].status is OrderStatus.PAID
