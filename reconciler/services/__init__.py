"""Reconciliation services package."""

from .bitcoin_recompute import BitcoinRecomputeEngine
from .difficulty_cache import DifficultyCache
from .reconciliation_analyzer import ReconciliationAnalyzer
from .reconciliation_orchestrator import ReconciliationOrchestrator
from .reconciliation_service import ReconciliationService
from .summary_rollup import SummaryRollup

__all__ = [
    "BitcoinRecomputeEngine",
    "DifficultyCache",
    "ReconciliationAnalyzer",
    "ReconciliationOrchestrator",
    "ReconciliationService",
    "SummaryRollup",
]
