"""Daily, monthly and yearly summary roll-ups."""

import calendar
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, Optional, Sequence, Tuple

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.database import transaction
from reconciler.core.exceptions import InvalidParameterError
from reconciler.core.locks import KeyedLocks
from reconciler.models import (
    BitcoinDailySummary,
    BitcoinMonthlySummary,
    BitcoinYearlySummary,
    HistoricalBitcoinCalculation,
)

logger = structlog.get_logger()

YEAR_MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")
YEAR_PATTERN = re.compile(r"^\d{4}$")


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_year_month(year_month: str) -> Tuple[date, date]:
    """First and last day of a "YYYY-MM" month."""
    match = YEAR_MONTH_PATTERN.match(year_month or "")
    if not match:
        raise InvalidParameterError(f"Invalid year-month '{year_month}', expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


class SummaryRollup:
    """Re-derive summaries from the next finer table.

    Daily rows come from derived calculations, monthly rows from daily rows
    and yearly rows from monthly rows. Every roll-up deletes the existing
    row and inserts a fresh one; when the finer table has nothing for the
    key the row is left absent.

    Writers of one summary row are serialized: in process through
    ``locks`` and, on Postgres, across processes through a
    transaction-scoped advisory lock taken before the source is summed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        miner_models: Sequence[str],
        locks: Optional[KeyedLocks] = None,
    ):
        self.session_factory = session_factory
        self.miner_models = list(miner_models)
        self.locks = locks or KeyedLocks()

    async def _lock_key(self, session: AsyncSession, key: Tuple[str, ...]) -> None:
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(":".join(key)))))

    async def roll_up_daily(
        self, day: date, miner_model: Optional[str] = None
    ) -> Dict[str, Optional[Decimal]]:
        """Rebuild daily summaries for ``day``; returns the amount per model."""
        models = [miner_model] if miner_model else self.miner_models
        amounts = {}
        for model in models:
            key = ("daily", day.isoformat(), model)
            async with self.locks.hold(key):
                async with transaction(self.session_factory) as session:
                    await self._lock_key(session, key)
                    amounts[model] = await self._replace_daily(session, day, model)
        return amounts

    async def _replace_daily(self, session: AsyncSession, day: date, model: str) -> Optional[Decimal]:
        result = await session.execute(
            select(
                func.sum(HistoricalBitcoinCalculation.bitcoin_mined),
                func.avg(HistoricalBitcoinCalculation.difficulty),
            ).where(
                HistoricalBitcoinCalculation.settlement_date == day,
                HistoricalBitcoinCalculation.miner_model == model,
            )
        )
        total, average_difficulty = result.one()

        await session.execute(
            delete(BitcoinDailySummary).where(
                BitcoinDailySummary.summary_date == day,
                BitcoinDailySummary.miner_model == model,
            )
        )
        if total is None:
            logger.debug("No calculations for daily summary", date=day.isoformat(), miner_model=model)
            return None

        total = _to_decimal(total)
        now = datetime.utcnow()
        session.add(
            BitcoinDailySummary(
                summary_date=day,
                miner_model=model,
                bitcoin_mined=total,
                average_difficulty=_to_decimal(average_difficulty),
                created_at=now,
                updated_at=now,
            )
        )
        logger.debug("Daily summary updated", date=day.isoformat(), miner_model=model, bitcoin=str(total))
        return total

    async def roll_up_monthly(self, year_month: str, miner_model: str) -> Optional[Decimal]:
        """Rebuild the monthly summary for a "YYYY-MM" month from daily rows."""
        first_day, last_day = parse_year_month(year_month)
        key = ("monthly", year_month, miner_model)

        async with self.locks.hold(key):
            async with transaction(self.session_factory) as session:
                await self._lock_key(session, key)
                result = await session.execute(
                    select(
                        func.sum(BitcoinDailySummary.bitcoin_mined),
                        func.avg(BitcoinDailySummary.average_difficulty),
                    ).where(
                        BitcoinDailySummary.summary_date >= first_day,
                        BitcoinDailySummary.summary_date <= last_day,
                        BitcoinDailySummary.miner_model == miner_model,
                    )
                )
                total, average_difficulty = result.one()

                await session.execute(
                    delete(BitcoinMonthlySummary).where(
                        BitcoinMonthlySummary.year_month == year_month,
                        BitcoinMonthlySummary.miner_model == miner_model,
                    )
                )
                if total is None:
                    return None

                total = _to_decimal(total)
                now = datetime.utcnow()
                session.add(
                    BitcoinMonthlySummary(
                        year_month=year_month,
                        miner_model=miner_model,
                        bitcoin_mined=total,
                        average_difficulty=_to_decimal(average_difficulty),
                        created_at=now,
                        updated_at=now,
                    )
                )

        logger.debug("Monthly summary updated", year_month=year_month, miner_model=miner_model, bitcoin=str(total))
        return total

    async def roll_up_yearly(self, year: str, miner_model: str) -> Optional[Decimal]:
        """Rebuild the yearly summary for "YYYY" from monthly rows."""
        year = str(year)
        if not YEAR_PATTERN.match(year):
            raise InvalidParameterError(f"Invalid year '{year}', expected YYYY")
        key = ("yearly", year, miner_model)

        async with self.locks.hold(key):
            async with transaction(self.session_factory) as session:
                await self._lock_key(session, key)
                result = await session.execute(
                    select(
                        func.sum(BitcoinMonthlySummary.bitcoin_mined),
                        func.avg(BitcoinMonthlySummary.average_difficulty),
                    ).where(
                        BitcoinMonthlySummary.year_month.like(f"{year}-%"),
                        BitcoinMonthlySummary.miner_model == miner_model,
                    )
                )
                total, average_difficulty = result.one()

                await session.execute(
                    delete(BitcoinYearlySummary).where(
                        BitcoinYearlySummary.year == year,
                        BitcoinYearlySummary.miner_model == miner_model,
                    )
                )
                if total is None:
                    return None

                total = _to_decimal(total)
                now = datetime.utcnow()
                session.add(
                    BitcoinYearlySummary(
                        year=year,
                        miner_model=miner_model,
                        bitcoin_mined=total,
                        average_difficulty=_to_decimal(average_difficulty),
                        created_at=now,
                        updated_at=now,
                    )
                )

        logger.debug("Yearly summary updated", year=year, miner_model=miner_model, bitcoin=str(total))
        return total

    async def roll_up_for_date(self, day: date, miner_models: Optional[Iterable[str]] = None) -> None:
        """Propagate a changed date through daily, monthly and yearly summaries."""
        models = list(miner_models) if miner_models is not None else self.miner_models
        year_month = day.strftime("%Y-%m")
        year = day.strftime("%Y")
        for model in models:
            await self.roll_up_daily(day, model)
            await self.roll_up_monthly(year_month, model)
            await self.roll_up_yearly(year, model)
        logger.info(
            "Summaries rolled up",
            date=day.isoformat(),
            year_month=year_month,
            models=models,
        )
