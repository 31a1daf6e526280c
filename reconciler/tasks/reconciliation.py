"""Celery tasks for scheduled and on-demand reconciliation."""

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

import structlog

from reconciler.celery_app import celery_app
from reconciler.core.database import close_db
from reconciler.services.reconciliation_service import ReconciliationService
from reconciler.tasks.base import ReconciliationTask

logger = structlog.get_logger()


def _run(coro):
    # Each task gets its own loop; the engine is disposed before it closes
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(
    base=ReconciliationTask,
    bind=True,
    name="reconciler.tasks.reconciliation.reconcile_recent_days",
)
def reconcile_recent_days(self, days: Optional[int] = None) -> Dict[str, Any]:
    """Analyze and fix the trailing look-back window."""
    logger.info("Starting scheduled reconciliation", days=days)
    return _run(_reconcile_recent_async(days))


async def _reconcile_recent_async(days: Optional[int]) -> Dict[str, Any]:
    try:
        result = await ReconciliationService().reconcile_recent(days)
        return result.model_dump(mode="json")
    finally:
        await close_db()


@celery_app.task(
    base=ReconciliationTask,
    bind=True,
    name="reconciler.tasks.reconciliation.fix_date",
)
def fix_date_task(
    self,
    day: str,
    miner_models: Optional[List[str]] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """Fix a single ISO date."""
    return _run(_fix_date_async(date.fromisoformat(day), miner_models, force))


async def _fix_date_async(day: date, miner_models: Optional[List[str]], force: bool) -> Dict[str, Any]:
    try:
        result = await ReconciliationService().fix_date(day, miner_models, force=force)
        return result.model_dump(mode="json")
    finally:
        await close_db()
