"""Outbound notification port; implementations must not block the caller."""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from domain.payment.entity import PaymentOrder


@runtime_checkable
class PaymentNotifier(Protocol):
    async def payment_succeeded(self, order: PaymentOrder) -> None: ...

    async def amount_mismatch(self, order: PaymentOrder, paid_amount: str, paid_currency: str) -> None: ...
