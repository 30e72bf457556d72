"""
Payment exceptions mapped to unified BusinessException variants.

Only PaymentSignatureError and AmountMismatchError are security relevant;
callers log them on the security channel.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentConfigError(BusinessException):
    def __init__(self, message: str, *, provider: str, missing: Optional[list[str]] = None):
        super().__init__(
            code=PaymentCode.CONFIG_ERROR,
            message=message,
            error_type="PaymentConfigError",
            details={"provider": provider, "missing": missing or []},
        )


class PaymentProviderError(BusinessException):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=full_details,
        )


class PaymentRecoverableError(PaymentProviderError):
    """Upstream call failed in a way that is worth retrying (timeouts, 5xx, rate limits)."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(message, provider=provider, provider_code=provider_code, details=details)
        self.code = PaymentCode.PROVIDER_RECOVERABLE
        self.error_type = "PaymentRecoverableError"


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )


class AmountMismatchError(BusinessException):
    def __init__(
        self,
        *,
        order_id: str,
        expected_amount: Decimal,
        expected_currency: str,
        paid_amount: Decimal,
        paid_currency: str,
    ):
        super().__init__(
            code=PaymentCode.AMOUNT_MISMATCH,
            message=f"Paid amount does not match order {order_id}",
            error_type="AmountMismatchError",
            details={
                "order_id": order_id,
                "expected_amount": str(expected_amount),
                "expected_currency": expected_currency,
                "paid_amount": str(paid_amount),
                "paid_currency": paid_currency,
            },
        )
        self.order_id = order_id


class DuplicateEventError(BusinessException):
    """Idempotency hit: the (provider, event_id) pair was already processed."""

    def __init__(self, provider: str, event_id: str):
        super().__init__(
            code=PaymentCode.DUPLICATE_EVENT,
            message=f"Event {event_id} already processed",
            error_type="DuplicateEventError",
            details={"provider": provider, "event_id": event_id},
        )
        self.provider = provider
        self.event_id = event_id


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_FOUND,
            message=f"Payment order not found: {order_id}",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class OrderAlreadyExistsException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=PaymentCode.ORDER_ALREADY_EXISTS,
            message=f"Payment order {order_id} already exists",
            error_type="OrderAlreadyExists",
            details={"order_id": order_id},
        )


class UnsupportedOperationError(BusinessException):
    def __init__(self, operation: str, *, provider: str):
        super().__init__(
            code=PaymentCode.UNSUPPORTED_OPERATION,
            message=f"{operation} is not supported by provider {provider}",
            error_type="UnsupportedOperation",
            details={"provider": provider, "operation": operation},
        )
