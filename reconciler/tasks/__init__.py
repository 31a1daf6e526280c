"""Celery tasks module."""

from reconciler.tasks.base import BaseTask, ReconciliationTask
from reconciler.tasks.reconciliation import fix_date_task, reconcile_recent_days

__all__ = [
    "BaseTask",
    "ReconciliationTask",
    "fix_date_task",
    "reconcile_recent_days",
]
