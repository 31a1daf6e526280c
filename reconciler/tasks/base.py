"""Base task class with common functionality."""

from typing import Any

import structlog
from celery import Task

from reconciler.core.exceptions import ConfigurationError, TransientStoreError

logger = structlog.get_logger()


class BaseTask(Task):
    """Base task that logs its lifecycle and retries transient store failures."""

    autoretry_for = (TransientStoreError, ConnectionError, TimeoutError)
    dont_autoretry_for = (ConfigurationError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes max backoff
    retry_jitter = True

    def __init__(self):
        super().__init__()
        self.logger = structlog.get_logger().bind(task_name=self.name)

    def before_start(self, task_id: str, args: tuple, kwargs: dict, **options):
        self.logger.info("Task starting", task_id=task_id, args=args, kwargs=kwargs)

    def on_success(self, retval: Any, task_id: str, args: tuple, kwargs: dict, **options):
        self.logger.info("Task completed successfully", task_id=task_id, result=retval)

    def on_failure(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any, **options):
        self.logger.error("Task failed", task_id=task_id, error=str(exc), exc_info=einfo)

    def on_retry(self, exc: Exception, task_id: str, args: tuple, kwargs: dict, einfo: Any, **options):
        self.logger.warning(
            "Task retrying",
            task_id=task_id,
            error=str(exc),
            retry_count=self.request.retries,
        )


class ReconciliationTask(BaseTask):
    """Long-running reconciliation work."""

    soft_time_limit = 3000  # 50 minutes
    time_limit = 3600  # 1 hour
