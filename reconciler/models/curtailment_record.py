"""Curtailment fact records."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.core.database import Base


class CurtailmentRecord(Base):
    """Curtailment volume accepted for a farm in one settlement period.

    Rows are owned by the ingestion process and only read here. The sign of
    ``volume`` gives the direction; zero-volume rows are ignored by the
    reconciliation.
    """

    __tablename__ = "curtailment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    settlement_date: Mapped[date] = mapped_column(Date, nullable=False)
    settlement_period: Mapped[int] = mapped_column(Integer, nullable=False)
    farm_id: Mapped[str] = mapped_column(String(50), nullable=False)
    lead_party_name: Mapped[Optional[str]] = mapped_column(String(255))

    volume: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    payment: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))
    final_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4))

    so_flag: Mapped[Optional[bool]] = mapped_column(Boolean)
    cadl_flag: Mapped[Optional[bool]] = mapped_column(Boolean)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_curtailment_date_period_farm", "settlement_date", "settlement_period", "farm_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<CurtailmentRecord(date={self.settlement_date}, period={self.settlement_period}, "
            f"farm_id={self.farm_id}, volume={self.volume})>"
        )
