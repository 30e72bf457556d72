"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    CONFIG_ERROR = 60005

    # Order lifecycle (61xxx)
    ORDER_NOT_FOUND = 61000
    ORDER_ALREADY_EXISTS = 61001
    AMOUNT_MISMATCH = 61002
    DUPLICATE_EVENT = 61003
    UNSUPPORTED_OPERATION = 61004


# Provider state -> internal order status. Anything unmapped stays "pending".
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "unpaid": "pending",
        "no_payment_required": "pending",
        "paid": "paid",
        "expired": "failed",
    },
    "alipay": {
        # Per trade_status
        "WAIT_BUYER_PAY": "pending",
        "TRADE_SUCCESS": "paid",
        "TRADE_FINISHED": "paid",
        "TRADE_CLOSED": "failed",
    },
    "wechat": {
        # Per trade_state
        "SUCCESS": "paid",
        "NOTPAY": "pending",
        "USERPAYING": "pending",
        "PAYERROR": "failed",
        "CLOSED": "failed",
        "REVOKED": "failed",
        "REFUND": "refunded",
    },
    "paypal": {
        # Capture status
        "PENDING": "pending",
        "COMPLETED": "paid",
        "DECLINED": "failed",
        "FAILED": "failed",
        "REFUNDED": "refunded",
    },
}
