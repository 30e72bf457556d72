"""
Celery tasks for payment side effects and reconciliation.

Each task run builds its own container inside ``asyncio.run`` so engine and
HTTP clients are bound to that loop.
"""
from __future__ import annotations

import asyncio

from celery import shared_task

from core.config import settings
from core.logging_config import get_logger, get_security_logger
from core.settings import payment_settings
from infrastructure.container import AppContainer
from infrastructure.tasks.notifier import LoggingPaymentNotifier
from .utils.base_task import BaseTask


logger = get_logger(__name__)
security_logger = get_security_logger()


@shared_task(
    name="payments.notify_paid",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def notify_paid(self, order_id: str, user_id: str) -> None:
    """Membership activated; hook for receipts and downstream entitlement sync."""
    logger.info("payment_paid_notification", order_id=order_id, user_id=user_id)


@shared_task(name="payments.amount_mismatch_alert", bind=True, base=BaseTask)
def amount_mismatch_alert(self, order_id: str, paid_amount: str, paid_currency: str) -> None:
    security_logger.error(
        "payment_amount_mismatch_review_required",
        order_id=order_id,
        paid_amount=paid_amount,
        paid_currency=paid_currency,
    )


async def _reconcile(min_age_seconds: int, limit: int) -> dict[str, int]:
    # tasks never enqueue further tasks from inside a worker
    container = AppContainer.build(settings, payment_settings, notifier=LoggingPaymentNotifier())
    try:
        return await container.status.reconcile_pending(min_age_seconds=min_age_seconds, limit=limit)
    finally:
        await container.aclose()


@shared_task(name="payments.reconcile_pending", bind=True, base=BaseTask, max_retries=3, default_retry_delay=60)
def reconcile_pending(self, min_age_seconds: int | None = None, limit: int | None = None) -> dict[str, int]:
    cfg = payment_settings.reconcile
    try:
        return asyncio.run(
            _reconcile(
                min_age_seconds if min_age_seconds is not None else cfg.pending_min_age_seconds,
                limit if limit is not None else cfg.batch_size,
            )
        )
    except Exception as exc:
        logger.error("payment_reconcile_failed", error=str(exc))
        raise self.retry(exc=exc)


async def _record_refund(order_id: str) -> bool:
    container = AppContainer.build(settings, payment_settings, notifier=LoggingPaymentNotifier())
    try:
        return await container.lifecycle.record_refund(order_id)
    finally:
        await container.aclose()


@shared_task(name="payments.record_refund", bind=True, base=BaseTask)
def record_refund(self, order_id: str) -> bool:
    """Out-of-band refund issued in a provider dashboard; paid -> refunded."""
    changed = asyncio.run(_record_refund(order_id))
    logger.info("payment_refund_task_completed", order_id=order_id, applied=changed)
    return changed
