"""Memoized network difficulty lookup with a durable backing table."""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional, Protocol, Set

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.core.config import get_settings
from reconciler.core.database import transaction
from reconciler.core.exceptions import ExternalLookupError, TransientStoreError
from reconciler.core.locks import InFlightRegistry
from reconciler.core.retry import RetryPolicy
from reconciler.models import BitcoinDifficulty

logger = structlog.get_logger()


class DifficultySource(Protocol):
    async def lookup_difficulty(self, day: date) -> Decimal: ...


class DifficultyCache:
    """Resolve the difficulty for a day, fetching at most once per day.

    Resolution order is the in-memory map, the ``bitcoin_difficulty`` table,
    then the external source under the retry policy. When every attempt
    fails the configured default is used and a warning is logged. The
    default is kept in memory only, so a later process tries the source
    again. Concurrent lookups for the same day share one request.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        source: DifficultySource,
        retry_policy: Optional[RetryPolicy] = None,
        default_difficulty: Optional[Decimal] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.source = source
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.DIFFICULTY_MAX_ATTEMPTS,
            base_delay=settings.DIFFICULTY_RETRY_BASE_DELAY,
            multiplier=2.0,
            retry_on=(ExternalLookupError,),
        )
        self.default_difficulty = (
            default_difficulty if default_difficulty is not None else settings.DEFAULT_DIFFICULTY
        )
        self._memory: Dict[date, Decimal] = {}
        self._fallback_dates: Set[date] = set()
        self._in_flight = InFlightRegistry()

    async def get_difficulty(self, day: date) -> Decimal:
        """Difficulty to use for calculations on ``day``."""
        cached = self._memory.get(day)
        if cached is not None:
            return cached
        return await self._in_flight.run(day, lambda: self._resolve(day))

    def used_fallback(self, day: date) -> bool:
        """True when ``day`` resolved to the default difficulty."""
        return day in self._fallback_dates

    def clear(self) -> None:
        self._memory.clear()
        self._fallback_dates.clear()

    async def _resolve(self, day: date) -> Decimal:
        stored = await self._load(day)
        if stored is not None:
            self._memory[day] = stored
            return stored

        try:
            difficulty = await self.retry_policy.run(
                self._fetch, day, description=f"difficulty lookup {day.isoformat()}"
            )
        except ExternalLookupError as e:
            logger.warning(
                "Difficulty lookup exhausted retries, using default difficulty",
                date=day.isoformat(),
                default_difficulty=str(self.default_difficulty),
                error=str(e),
            )
            self._memory[day] = self.default_difficulty
            self._fallback_dates.add(day)
            return self.default_difficulty

        await self._store(day, difficulty)
        self._memory[day] = difficulty
        return difficulty

    async def _fetch(self, day: date) -> Decimal:
        try:
            difficulty = await self.source.lookup_difficulty(day)
        except ExternalLookupError:
            raise
        except Exception as e:
            raise ExternalLookupError(f"Difficulty lookup for {day} failed: {e}") from e

        if difficulty is None or Decimal(difficulty) <= 0:
            raise ExternalLookupError(f"Difficulty source returned {difficulty!r} for {day}")
        return Decimal(difficulty)

    async def _load(self, day: date) -> Optional[Decimal]:
        async with transaction(self.session_factory) as session:
            result = await session.execute(
                select(BitcoinDifficulty.difficulty).where(BitcoinDifficulty.difficulty_date == day)
            )
            return result.scalar_one_or_none()

    async def _store(self, day: date, difficulty: Decimal) -> None:
        try:
            async with transaction(self.session_factory) as session:
                await session.merge(
                    BitcoinDifficulty(
                        difficulty_date=day,
                        difficulty=difficulty,
                        source="api",
                        fetched_at=datetime.utcnow(),
                    )
                )
        except TransientStoreError as e:
            # The value is still usable for this process
            logger.warning("Failed to persist difficulty", date=day.isoformat(), error=str(e))
