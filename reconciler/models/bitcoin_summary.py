"""Daily, monthly and yearly bitcoin summaries."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.core.database import Base


class BitcoinDailySummary(Base):
    """Bitcoin mined per day and miner model."""

    __tablename__ = "bitcoin_daily_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    summary_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    miner_model: Mapped[str] = mapped_column(String(50), nullable=False)
    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    average_difficulty: Mapped[Optional[Decimal]] = mapped_column(Numeric(30, 8))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("summary_date", "miner_model", name="uq_bitcoin_daily_date_model"),
    )

    def __repr__(self) -> str:
        return f"<BitcoinDailySummary(date={self.summary_date}, model={self.miner_model}, bitcoin={self.bitcoin_mined})>"


class BitcoinMonthlySummary(Base):
    """Bitcoin mined per calendar month ("YYYY-MM") and miner model."""

    __tablename__ = "bitcoin_monthly_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    miner_model: Mapped[str] = mapped_column(String(50), nullable=False)
    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    average_difficulty: Mapped[Optional[Decimal]] = mapped_column(Numeric(30, 8))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("year_month", "miner_model", name="uq_bitcoin_monthly_month_model"),
    )

    def __repr__(self) -> str:
        return f"<BitcoinMonthlySummary(year_month={self.year_month}, model={self.miner_model}, bitcoin={self.bitcoin_mined})>"


class BitcoinYearlySummary(Base):
    """Bitcoin mined per year ("YYYY") and miner model."""

    __tablename__ = "bitcoin_yearly_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[str] = mapped_column(String(4), nullable=False, index=True)
    miner_model: Mapped[str] = mapped_column(String(50), nullable=False)
    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    average_difficulty: Mapped[Optional[Decimal]] = mapped_column(Numeric(30, 8))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("year", "miner_model", name="uq_bitcoin_yearly_year_model"),
    )

    def __repr__(self) -> str:
        return f"<BitcoinYearlySummary(year={self.year}, model={self.miner_model}, bitcoin={self.bitcoin_mined})>"
