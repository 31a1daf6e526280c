"""Read-only comparison of curtailment facts against derived calculations."""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.database import transaction
from reconciler.core.exceptions import DataQualityWarning, InvalidParameterError
from reconciler.models import CurtailmentRecord, HistoricalBitcoinCalculation
from reconciler.schemas.reconciliation import (
    DateAnalysis,
    DateDetails,
    DateStatus,
    MissingCombination,
    ModelDetail,
    ModelStatus,
    PeriodDetail,
    ReconciliationStatus,
)

logger = structlog.get_logger()

Facts = CurtailmentRecord
Derived = HistoricalBitcoinCalculation


def completion_percentage(derived: int, expected: int) -> float:
    """Share of expected rows present, capped at 100."""
    if expected <= 0:
        return 100.0
    return round(min(derived / expected * 100, 100.0), 2)


def _date_filter(column, start: Optional[date], end: Optional[date]) -> list:
    conditions = []
    if start is not None:
        conditions.append(column >= start)
    if end is not None:
        conditions.append(column <= end)
    return conditions


class ReconciliationAnalyzer:
    """Detect derived rows missing for nonzero curtailment facts.

    Nothing here writes to the store. Data-quality findings are logged and
    attached to the results as warnings.
    """

    def __init__(self, session_factory: async_sessionmaker, miner_models: Sequence[str]):
        if not miner_models:
            raise InvalidParameterError("At least one miner model is required")
        self.session_factory = session_factory
        self.miner_models = list(miner_models)

    def _warn(self, warnings: List[str], message: str, day: Optional[date] = None) -> None:
        warning = DataQualityWarning(message, settlement_date=day)
        logger.warning("Data quality warning", date=day.isoformat() if day else None, detail=message)
        warnings.append(str(warning))

    async def analyze(self, day: date) -> DateAnalysis:
        """Missing settlement periods and farm rows per miner model for one date."""
        async with transaction(self.session_factory) as session:
            fact_rows = (
                await session.execute(
                    select(Facts.settlement_period, Facts.farm_id).where(
                        Facts.settlement_date == day, Facts.volume != 0
                    )
                )
            ).all()

            fact_periods = {row.settlement_period for row in fact_rows}
            fact_combinations = {(row.settlement_period, row.farm_id) for row in fact_rows}

            missing: Dict[str, List[int]] = {}
            missing_combinations: Dict[str, List[Tuple[int, str]]] = {}
            warnings: List[str] = []
            for model in self.miner_models:
                derived_rows = (
                    await session.execute(
                        select(Derived.settlement_period, Derived.farm_id).where(
                            Derived.settlement_date == day, Derived.miner_model == model
                        )
                    )
                ).all()
                derived_periods = {row.settlement_period for row in derived_rows}
                missing[model] = sorted(fact_periods - derived_periods)

                derived_combinations = {(row.settlement_period, row.farm_id) for row in derived_rows}
                missing_combinations[model] = sorted(fact_combinations - derived_combinations)
                orphaned = derived_combinations - fact_combinations
                if orphaned:
                    self._warn(
                        warnings,
                        f"{model}: {len(orphaned)} derived rows have no matching nonzero fact",
                        day,
                    )

        if len(fact_rows) > len(fact_combinations):
            self._warn(
                warnings,
                f"{len(fact_rows) - len(fact_combinations)} duplicate fact rows for the same period and farm",
                day,
            )

        is_complete = all(not combinations for combinations in missing_combinations.values())
        logger.debug(
            "Analyzed date",
            date=day.isoformat(),
            total_facts=len(fact_rows),
            is_complete=is_complete,
        )
        return DateAnalysis(
            date=day,
            total_facts=len(fact_rows),
            fact_periods=sorted(fact_periods),
            missing_periods=missing,
            missing_combinations=missing_combinations,
            is_complete=is_complete,
            warnings=warnings,
        )

    async def list_fact_dates(self, start: Optional[date] = None, end: Optional[date] = None) -> List[date]:
        """Dates holding at least one nonzero fact, oldest first."""
        async with transaction(self.session_factory) as session:
            result = await session.execute(
                select(Facts.settlement_date)
                .where(Facts.volume != 0, *_date_filter(Facts.settlement_date, start, end))
                .distinct()
                .order_by(Facts.settlement_date)
            )
            return list(result.scalars().all())

    async def _fact_counts_by_date(
        self, session: AsyncSession, start: Optional[date], end: Optional[date]
    ) -> Dict[date, Tuple[int, int]]:
        """Map of date to (fact rows, unique period/farm combinations)."""
        combos = (
            select(
                Facts.settlement_date.label("settlement_date"),
                Facts.settlement_period,
                Facts.farm_id,
                func.count().label("row_count"),
            )
            .where(Facts.volume != 0, *_date_filter(Facts.settlement_date, start, end))
            .group_by(Facts.settlement_date, Facts.settlement_period, Facts.farm_id)
            .subquery()
        )
        result = await session.execute(
            select(
                combos.c.settlement_date,
                func.sum(combos.c.row_count),
                func.count(),
            ).group_by(combos.c.settlement_date)
        )
        return {row[0]: (int(row[1]), int(row[2])) for row in result.all()}

    async def analyze_range(self, start: date, end: date) -> List[DateStatus]:
        """Per-date completeness between ``start`` and ``end`` inclusive, worst first."""
        if start > end:
            raise InvalidParameterError(f"Start date {start} is after end date {end}")

        async with transaction(self.session_factory) as session:
            fact_counts = await self._fact_counts_by_date(session, start, end)
            derived_result = await session.execute(
                select(Derived.settlement_date, func.count())
                .where(
                    Derived.miner_model.in_(self.miner_models),
                    *_date_filter(Derived.settlement_date, start, end),
                )
                .group_by(Derived.settlement_date)
            )
            derived_counts = {row[0]: int(row[1]) for row in derived_result.all()}

        statuses = []
        # Dates with derived rows but no nonzero facts are reported as orphans
        for day in set(fact_counts) | set(derived_counts):
            fact_count, combinations = fact_counts.get(day, (0, 0))
            derived = derived_counts.get(day, 0)
            expected = combinations * len(self.miner_models)
            warnings: List[str] = []
            if fact_count > combinations:
                self._warn(
                    warnings,
                    f"{fact_count - combinations} duplicate fact rows for the same period and farm",
                    day,
                )
            if not fact_count:
                self._warn(warnings, f"{derived} derived rows but no nonzero facts", day)
            elif derived > expected:
                self._warn(
                    warnings,
                    f"{derived} derived rows exceed the {expected} expected",
                    day,
                )
            statuses.append(
                DateStatus(
                    date=day,
                    fact_count=fact_count,
                    unique_combinations=combinations,
                    derived_count=derived,
                    expected_count=expected,
                    missing_count=max(expected - derived, 0),
                    completion_percentage=completion_percentage(derived, expected),
                    warnings=warnings,
                )
            )

        # Worst first; most recent first among equals
        statuses.sort(key=lambda s: s.date, reverse=True)
        statuses.sort(key=lambda s: s.completion_percentage)
        return statuses

    async def get_overall_status(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> ReconciliationStatus:
        """Totals and per-model coverage, over all data when no range is given."""
        async with transaction(self.session_factory) as session:
            fact_counts = await self._fact_counts_by_date(session, start, end)
            derived_result = await session.execute(
                select(Derived.miner_model, func.count())
                .where(
                    Derived.miner_model.in_(self.miner_models),
                    *_date_filter(Derived.settlement_date, start, end),
                )
                .group_by(Derived.miner_model)
            )
            derived_by_model = {row[0]: int(row[1]) for row in derived_result.all()}

        total_facts = sum(rows for rows, _ in fact_counts.values())
        combinations = sum(combos for _, combos in fact_counts.values())
        expected_per_model = combinations
        total_derived = sum(derived_by_model.values())
        expected_total = expected_per_model * len(self.miner_models)

        models = [
            ModelStatus(
                miner_model=model,
                derived_count=derived_by_model.get(model, 0),
                expected_count=expected_per_model,
                percentage=completion_percentage(derived_by_model.get(model, 0), expected_per_model),
            )
            for model in self.miner_models
        ]

        return ReconciliationStatus(
            start_date=start,
            end_date=end,
            total_fact_records=total_facts,
            unique_combinations=combinations,
            unique_dates=len(fact_counts),
            total_derived_records=total_derived,
            expected_derived_records=expected_total,
            reconciliation_percentage=completion_percentage(total_derived, expected_total),
            models=models,
        )

    async def get_date_details(self, day: date) -> DateDetails:
        """Periods, per-model totals and the exact missing combinations for a date."""
        async with transaction(self.session_factory) as session:
            fact_rows = (
                await session.execute(
                    select(Facts.settlement_period, Facts.farm_id, Facts.volume).where(
                        Facts.settlement_date == day, Facts.volume != 0
                    )
                )
            ).all()
            derived_rows = (
                await session.execute(
                    select(
                        Derived.miner_model,
                        Derived.settlement_period,
                        Derived.farm_id,
                        Derived.bitcoin_mined,
                    ).where(
                        Derived.settlement_date == day,
                        Derived.miner_model.in_(self.miner_models),
                    )
                )
            ).all()

        farms_by_period: Dict[int, Set[str]] = defaultdict(set)
        volume_by_period: Dict[int, Decimal] = defaultdict(Decimal)
        for row in fact_rows:
            farms_by_period[row.settlement_period].add(row.farm_id)
            volume_by_period[row.settlement_period] += abs(Decimal(row.volume))

        periods = [
            PeriodDetail(
                settlement_period=period,
                farm_count=len(farms_by_period[period]),
                total_volume=volume_by_period[period],
            )
            for period in sorted(farms_by_period)
        ]

        fact_combinations = {
            (period, farm) for period, farms in farms_by_period.items() for farm in farms
        }
        derived_by_model: Dict[str, Set[Tuple[int, str]]] = defaultdict(set)
        bitcoin_by_model: Dict[str, Decimal] = defaultdict(Decimal)
        for row in derived_rows:
            derived_by_model[row.miner_model].add((row.settlement_period, row.farm_id))
            bitcoin_by_model[row.miner_model] += Decimal(row.bitcoin_mined)

        models = []
        missing = []
        for model in self.miner_models:
            models.append(
                ModelDetail(
                    miner_model=model,
                    combination_count=len(derived_by_model[model]),
                    total_bitcoin=bitcoin_by_model[model],
                )
            )
            for period, farm in sorted(fact_combinations - derived_by_model[model]):
                missing.append(
                    MissingCombination(miner_model=model, settlement_period=period, farm_id=farm)
                )

        return DateDetails(date=day, periods=periods, models=models, missing=missing)
