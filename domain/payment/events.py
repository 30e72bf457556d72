"""
Verified provider notifications.

Adapters parse and authenticate a callback (or a trade query answer) into one of
these variants at the boundary, so the lifecycle code never inspects raw payloads.
Amounts are expressed in the order's native unit: fen for WeChat, major units
everywhere else.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL

from .entity import PaymentProvider


def _maps_to(provider: str, provider_status: str, internal: str) -> bool:
    return PROVIDER_STATUS_TO_INTERNAL[provider].get(provider_status) == internal


@dataclass(frozen=True)
class VerifiedPayment:
    provider: PaymentProvider
    order_id: Optional[str]
    provider_transaction_id: Optional[str] = None
    paid_amount: Optional[Decimal] = None
    paid_currency: Optional[str] = None
    event_id: Optional[str] = None
    provider_order_ref: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def succeeded(self) -> bool:
        return False

    @property
    def failed(self) -> bool:
        """Provider reports a terminal failure (closed, expired, declined)."""
        return False

    @property
    def refunded(self) -> bool:
        """Provider reports money returned to the payer after a successful charge."""
        return False

    @property
    def requires_capture(self) -> bool:
        return False


@dataclass(frozen=True)
class WechatTransactionNotice(VerifiedPayment):
    trade_state: str = ""

    @property
    def succeeded(self) -> bool:
        return self.trade_state == "SUCCESS"

    @property
    def failed(self) -> bool:
        return _maps_to("wechat", self.trade_state, "failed")

    @property
    def refunded(self) -> bool:
        return _maps_to("wechat", self.trade_state, "refunded")


@dataclass(frozen=True)
class WechatRefundNotice(VerifiedPayment):
    """REFUND.* callback; ``paid_amount`` carries the refunded amount in fen."""

    refund_status: str = ""

    @property
    def refunded(self) -> bool:
        return self.refund_status == "SUCCESS"


@dataclass(frozen=True)
class AlipayTradeNotice(VerifiedPayment):
    trade_status: str = ""
    refund_fee: Optional[Decimal] = None

    @property
    def succeeded(self) -> bool:
        return self.trade_status in ("TRADE_SUCCESS", "TRADE_FINISHED")

    @property
    def failed(self) -> bool:
        return not self.refunded and _maps_to("alipay", self.trade_status, "failed")

    @property
    def refunded(self) -> bool:
        # full refunds close the trade; partial ones leave the order paid
        if not self.refund_fee or self.refund_fee <= 0:
            return False
        return self.trade_status == "TRADE_CLOSED" or (
            self.paid_amount is not None and self.refund_fee >= self.paid_amount
        )


@dataclass(frozen=True)
class StripeCheckoutCompleted(VerifiedPayment):
    # empty event_type: built from a session lookup rather than a webhook
    event_type: str = ""
    payment_status: str = ""
    session_status: str = ""

    @property
    def succeeded(self) -> bool:
        return (
            self.event_type
            in ("checkout.session.completed", "checkout.session.async_payment_succeeded", "")
            and self.payment_status == "paid"
        )

    @property
    def failed(self) -> bool:
        return self.event_type in (
            "checkout.session.expired",
            "checkout.session.async_payment_failed",
        ) or _maps_to("stripe", self.session_status, "failed")


@dataclass(frozen=True)
class PayPalCaptureCompleted(VerifiedPayment):
    capture_status: str = ""

    @property
    def succeeded(self) -> bool:
        return self.capture_status == "COMPLETED"

    @property
    def failed(self) -> bool:
        return _maps_to("paypal", self.capture_status, "failed")

    @property
    def refunded(self) -> bool:
        return _maps_to("paypal", self.capture_status, "refunded")


@dataclass(frozen=True)
class PayPalRefundNotice(VerifiedPayment):
    refund_status: str = ""

    @property
    def refunded(self) -> bool:
        return self.refund_status == "COMPLETED" or _maps_to("paypal", self.refund_status, "refunded")


@dataclass(frozen=True)
class PayPalOrderApproved(VerifiedPayment):
    """Buyer approved the order; funds move only after a capture call."""

    @property
    def requires_capture(self) -> bool:
        return True


@dataclass(frozen=True)
class IgnoredNotification(VerifiedPayment):
    """Authentic callback of an event type that never moves an order."""

    event_type: str = ""
