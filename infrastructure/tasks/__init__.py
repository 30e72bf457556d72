"""Celery task infrastructure package.

Importing this module wires together the configured Celery app and the
dispatcher facade used by the payment notifier.
"""
from .config.celery import celery_app
from .utils.dispatcher import TaskDispatcher

__all__ = ["celery_app", "TaskDispatcher"]
