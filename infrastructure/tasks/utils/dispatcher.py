"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from ..config.celery import celery_app


class TaskDispatcher:
    """Internal facade used by the payment notifier to schedule tasks."""

    def notify_paid(self, order_id: str, user_id: str) -> None:
        celery_app.send_task("payments.notify_paid", kwargs={"order_id": order_id, "user_id": user_id})

    def amount_mismatch_alert(self, order_id: str, paid_amount: str, paid_currency: str) -> None:
        celery_app.send_task(
            "payments.amount_mismatch_alert",
            kwargs={"order_id": order_id, "paid_amount": paid_amount, "paid_currency": paid_currency},
        )

