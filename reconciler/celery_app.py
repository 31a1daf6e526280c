"""Celery application instance."""

from celery import Celery
from celery.signals import setup_logging

from reconciler.core.config import get_settings
from reconciler.core.logging import configure_logging

settings = get_settings()

celery_app = Celery("reconciler")

celery_app.config_from_object("reconciler.core.celery_config")

celery_app.autodiscover_tasks(["reconciler.tasks"])


@setup_logging.connect
def config_loggers(*args, **kwargs):
    """Configure logging for Celery."""
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
