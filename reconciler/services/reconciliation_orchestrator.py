"""Batch reconciliation with bounded concurrency and checkpointed progress."""

import asyncio
import time
from datetime import date
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

import structlog

from reconciler.core.config import get_settings
from reconciler.core.database import check_connection
from reconciler.core.exceptions import (
    ConfigurationError,
    IncompleteFixError,
    InvalidParameterError,
    TransientStoreError,
)
from reconciler.core.retry import RetryPolicy
from reconciler.schemas.reconciliation import BatchResult, DateAnalysis, FixResult
from reconciler.services.bitcoin_recompute import BitcoinRecomputeEngine
from reconciler.services.checkpoint import BatchPhase, CheckpointStore, ReconciliationCheckpoint
from reconciler.services.reconciliation_analyzer import ReconciliationAnalyzer
from reconciler.services.summary_rollup import SummaryRollup

logger = structlog.get_logger()


def chunked(items: Sequence[Any], size: int) -> List[List[Any]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class ReconciliationOrchestrator:
    """Drive analysis and fixes across many dates.

    A run moves IDLE -> ANALYZING -> FIXING -> COMPLETE. The checkpoint is
    saved after every date, so a stopped or crashed run resumes where it
    left off when it is started again for the same dates. A failing date is
    recorded with its reason and never stops the rest of the batch.
    """

    def __init__(
        self,
        analyzer: ReconciliationAnalyzer,
        engine: BitcoinRecomputeEngine,
        rollup: SummaryRollup,
        checkpoint_store: Optional[CheckpointStore] = None,
        batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        fix_retry_policy: Optional[RetryPolicy] = None,
        store_retry_policy: Optional[RetryPolicy] = None,
        connectivity_check: Optional[Callable[[], Awaitable[bool]]] = None,
        connectivity_interval: Optional[float] = None,
        connectivity_max_wait: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.analyzer = analyzer
        self.engine = engine
        self.rollup = rollup
        self.checkpoint_store = checkpoint_store or CheckpointStore(settings.CHECKPOINT_PATH)
        self.batch_size = batch_size or settings.RECONCILE_BATCH_SIZE
        self.max_concurrency = max_concurrency or settings.RECONCILE_MAX_CONCURRENCY
        if self.batch_size < 1 or self.max_concurrency < 1:
            raise ConfigurationError("Batch size and concurrency must be at least 1")

        self.fix_retry_policy = fix_retry_policy or RetryPolicy(
            max_attempts=settings.FIX_MAX_ATTEMPTS,
            base_delay=settings.FIX_RETRY_BASE_DELAY,
            retry_on=(Exception,),
            give_up_on=(InvalidParameterError,),
        )
        self.store_retry_policy = store_retry_policy or RetryPolicy(
            max_attempts=settings.STORE_MAX_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY,
            retry_on=(TransientStoreError,),
        )
        self.connectivity_check = connectivity_check or (
            lambda: check_connection(analyzer.session_factory)
        )
        self.connectivity_interval = (
            connectivity_interval
            if connectivity_interval is not None
            else settings.CONNECTIVITY_CHECK_INTERVAL
        )
        self.connectivity_max_wait = (
            connectivity_max_wait
            if connectivity_max_wait is not None
            else settings.CONNECTIVITY_MAX_WAIT
        )
        self.sleep = sleep
        self._stop_requested = False

    def request_stop(self) -> None:
        """Stop after the units of work already started."""
        logger.info("Stop requested")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def fix_date(
        self,
        day: date,
        miner_models: Optional[Iterable[str]] = None,
        force: bool = False,
    ) -> FixResult:
        """Recompute and roll up one date, then verify it is complete.

        Without ``miner_models`` only models with missing rows are
        recomputed; ``force`` recomputes every configured model.
        """
        if miner_models is not None:
            models = list(miner_models)
        elif force:
            models = list(self.analyzer.miner_models)
        else:
            models = (await self.analyzer.analyze(day)).models_needing_fix()

        if not models:
            logger.info("Date already complete", date=day.isoformat())
            return FixResult(date=day, success=True)

        results = await self.engine.recompute_date(day, models)
        await self.rollup.roll_up_for_date(day, models)

        verification = await self.analyzer.analyze(day)
        remaining = {
            model: periods
            for model, periods in verification.incomplete_periods().items()
            if model in models
        }
        return FixResult(
            date=day,
            models_recomputed=models,
            rows_written=sum(result.rows_written for result in results),
            used_default_difficulty=any(result.used_default_difficulty for result in results),
            remaining_missing=remaining,
            success=not remaining,
        )

    async def fix_date_with_retry(
        self,
        day: date,
        miner_models: Optional[Iterable[str]] = None,
        force: bool = False,
    ) -> FixResult:
        """``fix_date`` under the fix retry policy; raises once attempts run out."""
        attempts = 0
        models = list(miner_models) if miner_models is not None else None

        async def attempt() -> FixResult:
            nonlocal attempts
            attempts += 1
            result = await self.fix_date(day, models, force=force)
            if not result.success:
                raise IncompleteFixError(
                    f"Rows still missing after fix in periods: {result.remaining_missing}"
                )
            return result

        result = await self.fix_retry_policy.run(attempt, description=f"fix {day.isoformat()}")
        result.attempts = attempts
        return result

    async def analyze_date(self, day: date) -> DateAnalysis:
        return await self.store_retry_policy.run(
            self.analyzer.analyze, day, description=f"analyze {day.isoformat()}"
        )

    async def wait_for_store(self) -> bool:
        """Block while the store is unreachable; False once the max wait is exceeded."""
        waited = 0.0
        while not await self.connectivity_check():
            if waited >= self.connectivity_max_wait:
                logger.error(
                    "Store still unreachable, giving up",
                    waited_seconds=waited,
                    max_wait_seconds=self.connectivity_max_wait,
                )
                return False
            logger.warning(
                "Store unreachable, pausing batch",
                waited_seconds=waited,
                retry_in_seconds=self.connectivity_interval,
            )
            await self.sleep(self.connectivity_interval)
            waited += self.connectivity_interval
        return True

    async def list_dates(self, start: Optional[date], end: Optional[date]) -> Optional[List[date]]:
        """Dates with facts in the range; None when the store stays unreachable."""
        if not await self.wait_for_store():
            return None
        try:
            return await self.store_retry_policy.run(
                self.analyzer.list_fact_dates, start, end, description="list fact dates"
            )
        except TransientStoreError as e:
            logger.error("Could not list dates to reconcile", error=str(e))
            return None

    def _save(self, checkpoint: ReconciliationCheckpoint) -> None:
        self.checkpoint_store.save(checkpoint)

    def _load_or_start(self, dates: List[date], fresh: bool) -> ReconciliationCheckpoint:
        if fresh:
            self.checkpoint_store.reset()
        else:
            existing = self.checkpoint_store.load()
            if existing is not None and existing.phase != BatchPhase.COMPLETE and existing.covers(dates):
                logger.info(
                    "Resuming from checkpoint",
                    checkpoint_id=existing.id,
                    phase=existing.phase.value,
                    pending=len(existing.pending_dates),
                    unfixed=len(existing.unfixed_dates()),
                )
                return existing
            if existing is not None:
                logger.info("Starting new run; checkpoint does not match", checkpoint_id=existing.id)

        checkpoint = ReconciliationCheckpoint.start(dates)
        self._save(checkpoint)
        return checkpoint

    async def run(self, dates: Iterable[date], fresh: bool = False, force: bool = False) -> BatchResult:
        """Analyze ``dates`` and fix every incomplete one.

        Always returns a summary; per-date failures are listed in it.
        """
        started = time.monotonic()
        self._stop_requested = False
        ordered = sorted(set(dates))
        checkpoint = self._load_or_start(ordered, fresh)
        stopped = False

        if checkpoint.phase in (BatchPhase.IDLE, BatchPhase.ANALYZING):
            checkpoint.phase = BatchPhase.ANALYZING
            stopped = await self._run_analysis(checkpoint, force)
            if not stopped:
                checkpoint.phase = BatchPhase.FIXING
                self._save(checkpoint)

        if not stopped and checkpoint.phase == BatchPhase.FIXING:
            stopped = await self._run_fixes(checkpoint, force)
            if not stopped:
                checkpoint.phase = BatchPhase.COMPLETE
                self._save(checkpoint)

        result = BatchResult(
            phase=checkpoint.phase.value,
            total_dates=checkpoint.stats.total_dates,
            analyzed=checkpoint.stats.analyzed_dates,
            succeeded=len(checkpoint.fixed_dates),
            failed=len(checkpoint.failed_dates),
            skipped=checkpoint.stats.skipped_dates,
            pending=len(checkpoint.pending_dates) + len(checkpoint.unfixed_dates()),
            fixed_dates=sorted(checkpoint.fixed_dates),
            failed_dates=sorted(checkpoint.failed_dates, key=lambda entry: entry.date),
            stopped_early=stopped,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        logger.info(
            "Reconciliation batch finished",
            phase=result.phase,
            total_dates=result.total_dates,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            pending=result.pending,
            stopped_early=stopped,
        )
        return result

    async def _pause_point(self, checkpoint: ReconciliationCheckpoint) -> bool:
        """Between batches: True when the run must stop here."""
        if self._stop_requested:
            logger.info("Stopping between batches", last_processed_date=str(checkpoint.last_processed_date))
            self._save(checkpoint)
            return True
        if not await self.wait_for_store():
            checkpoint.stats.timeouts += 1
            self._save(checkpoint)
            return True
        return False

    async def _run_analysis(self, checkpoint: ReconciliationCheckpoint, force: bool) -> bool:
        batches = chunked(list(checkpoint.pending_dates), self.batch_size)
        for index, batch in enumerate(batches, start=1):
            if await self._pause_point(checkpoint):
                return True
            logger.info("Analyzing batch", batch=index, batches=len(batches), dates=len(batch))

            for day in batch:
                try:
                    analysis = await self.analyze_date(day)
                except Exception as e:
                    logger.error("Analysis failed", date=day.isoformat(), error=str(e))
                    checkpoint.pending_dates.remove(day)
                    checkpoint.mark_failed(day, f"analysis failed: {e}")
                    self._save(checkpoint)
                    continue

                needs_fix = force or not analysis.is_complete
                checkpoint.mark_analyzed(day, needs_fix)
                self._save(checkpoint)
                if needs_fix:
                    logger.info(
                        "Date needs fix",
                        date=day.isoformat(),
                        missing={m: len(c) for m, c in analysis.missing_combinations.items() if c},
                    )
        return False

    async def _run_fixes(self, checkpoint: ReconciliationCheckpoint, force: bool) -> bool:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        batches = chunked(checkpoint.unfixed_dates(), self.batch_size)

        async def fix_one(day: date) -> None:
            async with semaphore:
                if self._stop_requested:
                    return
                try:
                    result = await self.fix_date_with_retry(day, force=force)
                except Exception as e:
                    logger.error("Failed to fix date", date=day.isoformat(), error=str(e))
                    checkpoint.mark_failed(day, str(e) or type(e).__name__)
                else:
                    logger.info(
                        "Date fixed",
                        date=day.isoformat(),
                        models=result.models_recomputed,
                        rows=result.rows_written,
                        attempts=result.attempts,
                    )
                    checkpoint.mark_fixed(day)
                self._save(checkpoint)

        for index, batch in enumerate(batches, start=1):
            if await self._pause_point(checkpoint):
                return True
            logger.info("Fixing batch", batch=index, batches=len(batches), dates=len(batch))
            await asyncio.gather(*(fix_one(day) for day in batch))

        if self._stop_requested and checkpoint.unfixed_dates():
            return True
        return False
