"""Celery configuration for the reconciliation worker."""

from typing import Any, Dict

from celery.schedules import crontab

from reconciler.core.config import get_settings

settings = get_settings()

broker_url = settings.broker_url
result_backend = settings.result_backend_url

# Task settings
task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]
timezone = "UTC"
enable_utc = True

# Task execution settings
task_track_started = True
task_time_limit = 3600  # 1 hour hard limit
task_soft_time_limit = 3000  # 50 minutes soft limit
task_acks_late = True
worker_prefetch_multiplier = 1  # Reconciliation runs are long; no prefetching

# Retry settings
task_max_retries = 3
task_default_retry_delay = 60

# Result backend settings
result_expires = 86400
result_persistent = True

# Worker settings
worker_max_tasks_per_child = 100
worker_send_task_events = True
task_send_sent_event = True

# Nightly look-back reconciliation
beat_schedule: Dict[str, Any] = {
    "reconcile-recent-days": {
        "task": "reconciler.tasks.reconciliation.reconcile_recent_days",
        "schedule": crontab(hour=settings.RECONCILIATION_HOUR, minute=0),
        "kwargs": {"days": settings.LOOK_BACK_DAYS},
    },
}

# Queue routing
task_routes = {
    "reconciler.tasks.reconciliation.*": {"queue": "reconciliation"},
}

task_default_queue = "default"
task_queues = {
    "default": {
        "exchange": "default",
        "exchange_type": "direct",
        "routing_key": "default",
    },
    "reconciliation": {
        "exchange": "reconciliation",
        "exchange_type": "direct",
        "routing_key": "reconciliation",
    },
}

# Error handling
task_reject_on_worker_lost = True
task_ignore_result = False

# Broker connection retry settings
broker_connection_retry_on_startup = True
broker_connection_max_retries = 10

# Logging
worker_log_format = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
worker_task_log_format = "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
