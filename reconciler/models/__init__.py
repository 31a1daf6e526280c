"""Database models package."""

from .bitcoin_calculation import HistoricalBitcoinCalculation
from .bitcoin_difficulty import BitcoinDifficulty
from .bitcoin_summary import BitcoinDailySummary, BitcoinMonthlySummary, BitcoinYearlySummary
from .curtailment_record import CurtailmentRecord

__all__ = [
    "BitcoinDailySummary",
    "BitcoinDifficulty",
    "BitcoinMonthlySummary",
    "BitcoinYearlySummary",
    "CurtailmentRecord",
    "HistoricalBitcoinCalculation",
]
