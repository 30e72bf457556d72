from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    AmountUnit,
    BillingCycle,
    OrderStatus,
    PaymentOrder,
    PaymentProvider,
    generate_order_id,
)
from domain.payment.pricing import PricingTable


def _order(provider=PaymentProvider.STRIPE, amount=Decimal("4.99"), currency="USD", **kw):
    return PaymentOrder(
        id=None,
        order_id=generate_order_id(provider),
        provider=provider,
        user_id="u1",
        amount=amount,
        currency=currency,
        billing_days=30,
        billing_cycle=BillingCycle.MONTHLY,
        **kw,
    )


@pytest.mark.parametrize(
    "provider,prefix",
    [(PaymentProvider.WECHAT, "WX"), (PaymentProvider.ALIPAY, "ALI"),
     (PaymentProvider.STRIPE, "STR"), (PaymentProvider.PAYPAL, "PP")],
)
def test_order_id_prefix(provider, prefix):
    order_id = generate_order_id(provider, now_ms=1_700_000_000_000)
    assert order_id.startswith(prefix)
    assert order_id[len(prefix):].isalnum()


def test_order_ids_are_unique():
    ids = {generate_order_id(PaymentProvider.ALIPAY, now_ms=1) for _ in range(200)}
    assert len(ids) == 200


def test_prefix_must_match_provider():
    with pytest.raises(DomainValidationException):
        PaymentOrder(
            id=None, order_id="WX123", provider=PaymentProvider.STRIPE, user_id="u1",
            amount=Decimal("1"), currency="USD", billing_days=30, billing_cycle="monthly",
        )


def test_amount_match_uses_provider_tolerance():
    order = _order()
    assert order.matches_amount(Decimal("4.99"), "usd")
    assert order.matches_amount(Decimal("5.00"), "USD")
    assert not order.matches_amount(Decimal("5.01"), "USD")
    assert not order.matches_amount(Decimal("4.99"), "EUR")


def test_wechat_amount_is_exact_in_fen():
    order = _order(PaymentProvider.WECHAT, amount=Decimal("2990"), currency="CNY")
    assert order.amount_unit is AmountUnit.MINOR
    assert order.amount_major == Decimal("29.90")
    assert order.matches_amount(Decimal("2990"), "CNY")
    assert not order.matches_amount(Decimal("2989"), "CNY")


def test_transitions():
    order = _order()
    order.mark_paid("pi_1")
    assert order.status is OrderStatus.PAID
    with pytest.raises(DomainValidationException):
        order.mark_failed()
    order.mark_refunded()
    assert order.status is OrderStatus.REFUNDED
    with pytest.raises(DomainValidationException):
        order.mark_paid("pi_2")


def test_pricing_converts_wechat_to_fen():
    table = PricingTable(prices={"CNY": {"monthly": Decimal("29.90")}, "USD": {"yearly": Decimal("49.99")}})
    wx = table.quote(PaymentProvider.WECHAT, "monthly")
    assert (wx.amount, wx.currency, wx.billing_days) == (Decimal("2990"), "CNY", 30)
    pp = table.quote(PaymentProvider.PAYPAL, BillingCycle.YEARLY)
    assert (pp.amount, pp.currency, pp.billing_days) == (Decimal("49.99"), "USD", 365)
    with pytest.raises(DomainValidationException):
        table.quote(PaymentProvider.STRIPE, "monthly")
