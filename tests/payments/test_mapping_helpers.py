from decimal import Decimal

import pytest

from domain.payment.entity import PaymentProvider
from domain.payment.events import (
    AlipayTradeNotice,
    IgnoredNotification,
    PayPalCaptureCompleted,
    PayPalOrderApproved,
    StripeCheckoutCompleted,
    WechatTransactionNotice,
)
from infrastructure.external.payments.stripe_client import from_minor, to_minor
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


@pytest.mark.parametrize(
    "state,succeeded,failed",
    [("SUCCESS", True, False), ("NOTPAY", False, False), ("CLOSED", False, True), ("PAYERROR", False, True)],
)
def test_wechat_trade_state(state, succeeded, failed):
    notice = WechatTransactionNotice(provider=PaymentProvider.WECHAT, order_id="o", trade_state=state)
    assert (notice.succeeded, notice.failed) == (succeeded, failed)


@pytest.mark.parametrize(
    "status,succeeded,failed",
    [
        ("TRADE_SUCCESS", True, False),
        ("TRADE_FINISHED", True, False),
        ("WAIT_BUYER_PAY", False, False),
        ("TRADE_CLOSED", False, True),
    ],
)
def test_alipay_trade_status(status, succeeded, failed):
    notice = AlipayTradeNotice(provider=PaymentProvider.ALIPAY, order_id="o", trade_status=status)
    assert (notice.succeeded, notice.failed) == (succeeded, failed)


def test_stripe_session_flags():
    def session(**kw):
        return StripeCheckoutCompleted(provider=PaymentProvider.STRIPE, order_id="o", **kw)

    assert session(event_type="checkout.session.completed", payment_status="paid").succeeded
    # delayed payment methods complete the session before funds arrive
    assert not session(event_type="checkout.session.completed", payment_status="unpaid").succeeded
    assert session(event_type="checkout.session.async_payment_succeeded", payment_status="paid").succeeded
    assert session(event_type="checkout.session.expired").failed
    assert session(payment_status="paid").succeeded
    assert session(session_status="expired").failed


def test_paypal_variants():
    completed = PayPalCaptureCompleted(provider=PaymentProvider.PAYPAL, order_id="o", capture_status="COMPLETED")
    assert completed.succeeded and not completed.requires_capture
    declined = PayPalCaptureCompleted(provider=PaymentProvider.PAYPAL, order_id="o", capture_status="DECLINED")
    assert declined.failed
    approved = PayPalOrderApproved(provider=PaymentProvider.PAYPAL, order_id="o", provider_order_ref="PP")
    assert approved.requires_capture and not approved.succeeded


def test_ignored_notification_never_moves_an_order():
    ignored = IgnoredNotification(provider=PaymentProvider.STRIPE, order_id=None, event_type="customer.created")
    assert not (ignored.succeeded or ignored.failed or ignored.requires_capture)


def test_unmapped_states_stay_pending():
    assert PROVIDER_STATUS_TO_INTERNAL["wechat"].get("UNKNOWN_STATE") is None
    assert not WechatTransactionNotice(
        provider=PaymentProvider.WECHAT, order_id="o", trade_state="UNKNOWN_STATE"
    ).failed


def test_stripe_minor_units():
    assert to_minor(Decimal("4.99"), "USD") == 499
    assert from_minor(499, "usd") == Decimal("4.99")
    assert to_minor(Decimal("500"), "JPY") == 500
