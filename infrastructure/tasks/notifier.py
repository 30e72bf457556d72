"""
PaymentNotifier implementations.

Task publishing talks to the broker synchronously, so it runs in a worker
thread and never holds up the transition that triggered it.
"""
from __future__ import annotations

import asyncio

from core.logging_config import get_logger, get_security_logger
from domain.payment.entity import PaymentOrder
from infrastructure.tasks.utils.dispatcher import TaskDispatcher

logger = get_logger(__name__)
security_logger = get_security_logger()


class CeleryPaymentNotifier:
    def __init__(self, dispatcher: TaskDispatcher | None = None) -> None:
        self._dispatcher = dispatcher or TaskDispatcher()

    async def payment_succeeded(self, order: PaymentOrder) -> None:
        await asyncio.to_thread(self._dispatcher.notify_paid, order.order_id, order.user_id)

    async def amount_mismatch(self, order: PaymentOrder, paid_amount: str, paid_currency: str) -> None:
        await asyncio.to_thread(self._dispatcher.amount_mismatch_alert, order.order_id, paid_amount, paid_currency)


class LoggingPaymentNotifier:
    """Used when no broker is configured."""

    async def payment_succeeded(self, order: PaymentOrder) -> None:
        logger.info("payment_succeeded_notification", order_id=order.order_id, user_id=order.user_id)

    async def amount_mismatch(self, order: PaymentOrder, paid_amount: str, paid_currency: str) -> None:
        security_logger.warning(
            "payment_amount_mismatch_alert",
            order_id=order.order_id,
            expected_amount=str(order.amount),
            expected_currency=order.currency,
            paid_amount=paid_amount,
            paid_currency=paid_currency,
        )
