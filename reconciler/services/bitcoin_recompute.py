"""Full-replace recomputation of derived bitcoin rows for one date and model."""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.core.database import transaction
from reconciler.core.exceptions import InvalidParameterError
from reconciler.core.locks import InFlightRegistry
from reconciler.models import CurtailmentRecord, HistoricalBitcoinCalculation
from reconciler.services.bitcoin_calculator import (
    MINER_MODELS,
    MinerModel,
    ModelRef,
    calculate_period,
)
from reconciler.services.difficulty_cache import DifficultyCache

logger = structlog.get_logger()


@dataclass
class RecomputeResult:
    """What one recompute wrote."""

    date: date
    miner_model: str
    rows_written: int
    periods: int
    difficulty: Decimal
    used_default_difficulty: bool = False
    total_bitcoin: Decimal = Decimal("0")


class BitcoinRecomputeEngine:
    """Regenerate ``historical_bitcoin_calculations`` from curtailment facts.

    Each call replaces every derived row for one (date, model) inside a
    single transaction: facts are read, existing rows deleted and the new
    rows bulk inserted. Callers that ask for a key already being recomputed
    wait for that run and receive its result.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        difficulty_cache: DifficultyCache,
        miner_models: Optional[Iterable[MinerModel]] = None,
        in_flight: Optional[InFlightRegistry] = None,
    ):
        self.session_factory = session_factory
        self.difficulty_cache = difficulty_cache
        models = list(miner_models) if miner_models is not None else list(MINER_MODELS.values())
        self.miner_models: Dict[str, MinerModel] = {model.name: model for model in models}
        self._in_flight = in_flight or InFlightRegistry()

    def _resolve_model(self, miner_model: ModelRef) -> MinerModel:
        if isinstance(miner_model, MinerModel):
            return miner_model
        model = self.miner_models.get(miner_model) or MINER_MODELS.get(miner_model)
        if model is None:
            raise InvalidParameterError(f"Unknown miner model: {miner_model}")
        return model

    def is_running(self, day: date, miner_model: str) -> bool:
        return self._in_flight.is_in_flight((day, miner_model))

    async def recompute(self, day: date, miner_model: ModelRef) -> RecomputeResult:
        """Replace all derived rows for ``day`` and ``miner_model``."""
        model = self._resolve_model(miner_model)
        return await self._in_flight.run(
            (day, model.name), lambda: self._recompute(day, model)
        )

    async def recompute_date(self, day: date, miner_models: Iterable[ModelRef]) -> List[RecomputeResult]:
        """Recompute several models for one date, one transaction per model."""
        results = []
        for model in miner_models:
            results.append(await self.recompute(day, model))
        return results

    async def _recompute(self, day: date, model: MinerModel) -> RecomputeResult:
        # Resolved before the transaction opens; the lookup has its own sessions
        difficulty = await self.difficulty_cache.get_difficulty(day)
        if difficulty <= 0:
            raise InvalidParameterError(f"Difficulty for {day} must be positive, got {difficulty}")

        async with transaction(self.session_factory) as session:
            result = await session.execute(
                select(
                    CurtailmentRecord.settlement_period,
                    CurtailmentRecord.farm_id,
                    CurtailmentRecord.volume,
                ).where(
                    CurtailmentRecord.settlement_date == day,
                    CurtailmentRecord.volume != 0,
                )
            )

            volumes: Dict[int, Dict[str, Decimal]] = defaultdict(lambda: defaultdict(Decimal))
            for period, farm_id, volume in result.all():
                volumes[period][farm_id] += abs(Decimal(volume))

            calculated_at = datetime.utcnow()
            rows = []
            total_bitcoin = Decimal("0")
            for period in sorted(volumes):
                period_total, shares = calculate_period(volumes[period], model, difficulty)
                total_bitcoin += period_total
                for farm_id in sorted(shares):
                    rows.append(
                        {
                            "settlement_date": day,
                            "settlement_period": period,
                            "farm_id": farm_id,
                            "miner_model": model.name,
                            "bitcoin_mined": shares[farm_id],
                            "difficulty": difficulty,
                            "calculated_at": calculated_at,
                        }
                    )

            await session.execute(
                delete(HistoricalBitcoinCalculation).where(
                    HistoricalBitcoinCalculation.settlement_date == day,
                    HistoricalBitcoinCalculation.miner_model == model.name,
                )
            )
            if rows:
                await session.execute(insert(HistoricalBitcoinCalculation), rows)

        used_default = self.difficulty_cache.used_fallback(day)
        logger.info(
            "Recomputed bitcoin calculations",
            date=day.isoformat(),
            miner_model=model.name,
            periods=len(volumes),
            rows=len(rows),
            total_bitcoin=str(total_bitcoin),
            difficulty=str(difficulty),
            used_default_difficulty=used_default,
        )
        return RecomputeResult(
            date=day,
            miner_model=model.name,
            rows_written=len(rows),
            periods=len(volumes),
            difficulty=difficulty,
            used_default_difficulty=used_default,
            total_bitcoin=total_bitcoin,
        )
