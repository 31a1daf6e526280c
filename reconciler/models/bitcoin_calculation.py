"""Per-farm derived bitcoin calculations."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.core.database import Base


class HistoricalBitcoinCalculation(Base):
    """Bitcoin that could have been mined with one farm's curtailed energy."""

    __tablename__ = "historical_bitcoin_calculations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    settlement_date: Mapped[date] = mapped_column(Date, nullable=False)
    settlement_period: Mapped[int] = mapped_column(Integer, nullable=False)
    farm_id: Mapped[str] = mapped_column(String(50), nullable=False)
    miner_model: Mapped[str] = mapped_column(String(50), nullable=False)

    bitcoin_mined: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    difficulty: Mapped[Decimal] = mapped_column(Numeric(30, 8), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "settlement_date",
            "settlement_period",
            "farm_id",
            "miner_model",
            name="uq_bitcoin_calc_date_period_farm_model",
        ),
        Index("idx_bitcoin_calc_date_model", "settlement_date", "miner_model"),
    )

    def __repr__(self) -> str:
        return (
            f"<HistoricalBitcoinCalculation(date={self.settlement_date}, "
            f"period={self.settlement_period}, farm_id={self.farm_id}, "
            f"model={self.miner_model}, bitcoin={self.bitcoin_mined})>"
        )
