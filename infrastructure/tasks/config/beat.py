"""Celery beat schedule: periodic reconciliation of pending payment orders."""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    "payments-reconcile-pending": {
        "task": "payments.reconcile_pending",
        "schedule": float(payment_settings.reconcile.interval_seconds),
        "options": {"queue": "low"},
    },
}
