"""Durable cache of network difficulty per day."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.core.database import Base


class BitcoinDifficulty(Base):
    """Network difficulty fetched for one day."""

    __tablename__ = "bitcoin_difficulty"

    difficulty_date: Mapped[date] = mapped_column(Date, primary_key=True)
    difficulty: Mapped[Decimal] = mapped_column(Numeric(30, 8), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="api")
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<BitcoinDifficulty(date={self.difficulty_date}, difficulty={self.difficulty})>"
