"""Operations exposed to the CLI and the Celery tasks."""

from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Union

import pandas as pd
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.core.config import Settings, get_settings
from reconciler.core.database import get_session_factory
from reconciler.core.exceptions import ConfigurationError
from reconciler.schemas.reconciliation import (
    BatchResult,
    DateAnalysis,
    DateDetails,
    DateStatus,
    FixResult,
    ReconciliationStatus,
)
from reconciler.services.bitcoin_calculator import resolve_miner_models
from reconciler.services.bitcoin_recompute import BitcoinRecomputeEngine
from reconciler.services.checkpoint import BatchPhase, CheckpointStore
from reconciler.services.difficulty_cache import DifficultyCache, DifficultySource
from reconciler.services.difficulty_client import DifficultyClient
from reconciler.services.reconciliation_analyzer import ReconciliationAnalyzer
from reconciler.services.reconciliation_orchestrator import ReconciliationOrchestrator
from reconciler.services.summary_rollup import SummaryRollup

logger = structlog.get_logger()

REPORT_COLUMNS = [
    "date",
    "fact_count",
    "unique_combinations",
    "derived_count",
    "expected_count",
    "missing_count",
    "completion_percentage",
    "warnings",
]


def _check_range(start: Optional[date], end: Optional[date]) -> None:
    if start is not None and end is not None and start > end:
        raise ConfigurationError(f"Start date {start} is after end date {end}")


def _unreachable_result() -> BatchResult:
    return BatchResult(phase=BatchPhase.IDLE.value, stopped_early=True)


class ReconciliationService:
    """Wires the reconciliation components around one session factory.

    The service owns the difficulty cache and the per-key recompute
    registry, so one instance should be shared by everything running in a
    process.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        difficulty_source: Optional[DifficultySource] = None,
        difficulty_cache: Optional[DifficultyCache] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        miner_models: Optional[Iterable[str]] = None,
        settings: Optional[Settings] = None,
        **orchestrator_options,
    ):
        self.settings = settings or get_settings()
        models = resolve_miner_models(
            miner_models if miner_models is not None else self.settings.MINER_MODELS
        )
        self.miner_models = [model.name for model in models]
        self.session_factory = session_factory or get_session_factory()

        self.difficulty_cache = difficulty_cache or DifficultyCache(
            self.session_factory, difficulty_source or DifficultyClient()
        )
        self.analyzer = ReconciliationAnalyzer(self.session_factory, self.miner_models)
        self.engine = BitcoinRecomputeEngine(self.session_factory, self.difficulty_cache, models)
        self.rollup = SummaryRollup(self.session_factory, self.miner_models)
        self.checkpoint_store = checkpoint_store or CheckpointStore(self.settings.CHECKPOINT_PATH)
        self.orchestrator_options = orchestrator_options

    def orchestrator(
        self,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
    ) -> ReconciliationOrchestrator:
        options = dict(self.orchestrator_options)
        if batch_size is not None:
            options["batch_size"] = batch_size
        if concurrency is not None:
            options["max_concurrency"] = concurrency
        options["checkpoint_store"] = checkpoint_store or self.checkpoint_store
        return ReconciliationOrchestrator(self.analyzer, self.engine, self.rollup, **options)

    async def status(self, start: Optional[date] = None, end: Optional[date] = None) -> ReconciliationStatus:
        _check_range(start, end)
        return await self.analyzer.get_overall_status(start, end)

    async def analyze(self, day: date) -> DateAnalysis:
        return await self.analyzer.analyze(day)

    async def analyze_range(self, start: date, end: date) -> List[DateStatus]:
        _check_range(start, end)
        return await self.analyzer.analyze_range(start, end)

    async def date_details(self, day: date) -> DateDetails:
        return await self.analyzer.get_date_details(day)

    async def reconcile(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        fresh: bool = False,
        force: bool = False,
    ) -> BatchResult:
        """Analyze every date with facts in the range and fix incomplete ones."""
        _check_range(start, end)
        orchestrator = self.orchestrator(batch_size, concurrency)
        dates = await orchestrator.list_dates(start, end)
        if dates is None:
            return _unreachable_result()
        logger.info(
            "Starting reconciliation",
            start=str(start) if start else None,
            end=str(end) if end else None,
            dates=len(dates),
        )
        return await orchestrator.run(dates, fresh=fresh, force=force)

    async def fix_range(
        self,
        start: date,
        end: date,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        fresh: bool = False,
        force: bool = False,
    ) -> BatchResult:
        if start is None or end is None:
            raise ConfigurationError("fix_range needs both a start and an end date")
        return await self.reconcile(start, end, batch_size, concurrency, fresh=fresh, force=force)

    async def fix_date(
        self,
        day: date,
        miner_models: Optional[Iterable[str]] = None,
        force: bool = False,
    ) -> FixResult:
        """Fix one date with retries; failures come back in the result."""
        models = None
        if miner_models:
            models = [model.name for model in resolve_miner_models(miner_models)]
            unknown = set(models) - set(self.miner_models)
            if unknown:
                raise ConfigurationError(f"Miner models not configured: {', '.join(sorted(unknown))}")

        orchestrator = self.orchestrator()
        try:
            return await orchestrator.fix_date_with_retry(day, models, force=force)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error("Failed to fix date", date=day.isoformat(), error=str(e))
            return FixResult(date=day, models_recomputed=models or [], success=False, error=str(e) or type(e).__name__)

    async def reconcile_recent(self, days: Optional[int] = None, today: Optional[date] = None) -> BatchResult:
        """Reconcile the trailing look-back window ending today (UTC)."""
        days = days if days is not None else self.settings.LOOK_BACK_DAYS
        if days < 1:
            raise ConfigurationError("Look-back window must be at least one day")
        end = today or datetime.utcnow().date()
        start = end - timedelta(days=days - 1)

        # Separate document so a long-running range checkpoint is not clobbered
        recent_store = CheckpointStore(
            self.checkpoint_store.path.with_name(f"recent_{self.checkpoint_store.path.name}")
        )
        orchestrator = self.orchestrator(checkpoint_store=recent_store)
        dates = await orchestrator.list_dates(start, end)
        if dates is None:
            return _unreachable_result()
        logger.info("Reconciling recent days", start=start.isoformat(), end=end.isoformat(), dates=len(dates))
        return await orchestrator.run(dates, fresh=True)

    def reset_checkpoint(self) -> bool:
        return self.checkpoint_store.reset()

    async def export_report(self, start: date, end: date, path: Union[str, Path]) -> int:
        """Write the worst-first range report to CSV; returns the row count."""
        if start is None or end is None:
            raise ConfigurationError("export_report needs both a start and an end date")
        statuses = await self.analyze_range(start, end)
        rows = []
        for status in statuses:
            row = status.model_dump(mode="json")
            row["warnings"] = "; ".join(status.warnings)
            rows.append(row)

        df = pd.DataFrame(rows, columns=REPORT_COLUMNS)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=False)
        logger.info("Exported reconciliation report", path=str(path), rows=len(df))
        return len(df)
