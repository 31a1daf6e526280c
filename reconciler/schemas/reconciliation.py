"""Schemas for reconciliation results."""

import datetime as dt
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class DateAnalysis(BaseModel):
    """Completeness of one settlement date.

    ``missing_periods`` lists periods with no derived row at all for a
    model; ``missing_combinations`` lists every (period, farm) pair with a
    nonzero fact and no derived row, so it also covers periods that are
    only partly derived.
    """
    date: dt.date
    total_facts: int
    fact_periods: List[int] = []
    missing_periods: Dict[str, List[int]] = {}
    missing_combinations: Dict[str, List[Tuple[int, str]]] = {}
    is_complete: bool
    warnings: List[str] = []

    def incomplete_periods(self) -> Dict[str, List[int]]:
        """Periods lacking at least one farm row, per model with any gap."""
        gaps = {}
        for model in self.models_needing_fix():
            periods = set(self.missing_periods.get(model, []))
            periods.update(period for period, _ in self.missing_combinations.get(model, []))
            gaps[model] = sorted(periods)
        return gaps

    def models_needing_fix(self) -> List[str]:
        """Models with a missing period or farm row, in configured order."""
        models = list(self.missing_periods)
        models.extend(m for m in self.missing_combinations if m not in self.missing_periods)
        return [
            model
            for model in models
            if self.missing_periods.get(model) or self.missing_combinations.get(model)
        ]


class DateStatus(BaseModel):
    """Row of the worst-first range report."""
    date: dt.date
    fact_count: int
    unique_combinations: int
    derived_count: int
    expected_count: int
    missing_count: int
    completion_percentage: float = Field(..., ge=0, le=100)
    warnings: List[str] = []


class ModelStatus(BaseModel):
    """Derived row coverage for one miner model."""
    miner_model: str
    derived_count: int
    expected_count: int
    percentage: float


class ReconciliationStatus(BaseModel):
    """Overall completeness across a date range (or all data)."""
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    total_fact_records: int
    unique_combinations: int
    unique_dates: int
    total_derived_records: int
    expected_derived_records: int
    reconciliation_percentage: float
    models: List[ModelStatus] = []


class MissingCombination(BaseModel):
    miner_model: str
    settlement_period: int
    farm_id: str


class PeriodDetail(BaseModel):
    settlement_period: int
    farm_count: int
    total_volume: Decimal


class ModelDetail(BaseModel):
    miner_model: str
    combination_count: int
    total_bitcoin: Decimal


class DateDetails(BaseModel):
    """Per-period and per-model breakdown of a single date."""
    date: dt.date
    periods: List[PeriodDetail] = []
    models: List[ModelDetail] = []
    missing: List[MissingCombination] = []


class FixResult(BaseModel):
    """Outcome of fixing one date."""
    date: dt.date
    models_recomputed: List[str] = []
    rows_written: int = 0
    attempts: int = 1
    used_default_difficulty: bool = False
    remaining_missing: Dict[str, List[int]] = {}
    success: bool
    error: Optional[str] = None


class FailedDate(BaseModel):
    date: dt.date
    reason: str


class BatchResult(BaseModel):
    """Summary returned by every batch operation."""
    phase: str
    total_dates: int = 0
    analyzed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0
    fixed_dates: List[dt.date] = []
    failed_dates: List[FailedDate] = []
    stopped_early: bool = False
    duration_seconds: float = 0.0

    @property
    def has_failures(self) -> bool:
        return self.failed > 0
