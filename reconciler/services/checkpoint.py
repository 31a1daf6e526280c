"""Persisted progress of a reconciliation batch."""

import os
import tempfile
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from reconciler.schemas.reconciliation import FailedDate

logger = structlog.get_logger()


class BatchPhase(str, Enum):
    """Batch run state."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    FIXING = "fixing"
    COMPLETE = "complete"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckpointStats(_CamelModel):
    total_dates: int = 0
    analyzed_dates: int = 0
    dates_needing_fix: int = 0
    fixed_dates: int = 0
    failed_dates: int = 0
    skipped_dates: int = 0
    timeouts: int = 0


class ReconciliationCheckpoint(_CamelModel):
    """Resume aid for a batch run.

    ``completed_dates`` holds the dates whose analysis is persisted,
    ``pending_dates`` the dates still to analyze. The tables remain the
    source of truth; deleting this document only costs a re-analysis.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    phase: BatchPhase = BatchPhase.IDLE
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    last_processed_date: Optional[date] = None
    pending_dates: List[date] = []
    completed_dates: List[date] = []
    dates_needing_fix: List[date] = []
    fixed_dates: List[date] = []
    failed_dates: List[FailedDate] = []
    stats: CheckpointStats = Field(default_factory=CheckpointStats)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def start(cls, dates: List[date]) -> "ReconciliationCheckpoint":
        ordered = sorted(set(dates))
        return cls(
            phase=BatchPhase.ANALYZING,
            start_date=ordered[0] if ordered else None,
            end_date=ordered[-1] if ordered else None,
            pending_dates=ordered,
            stats=CheckpointStats(total_dates=len(ordered)),
        )

    def covers(self, dates: List[date]) -> bool:
        """True when this checkpoint was started for exactly ``dates``."""
        tracked = set(self.pending_dates) | set(self.completed_dates)
        tracked |= {entry.date for entry in self.failed_dates}
        return tracked == set(dates)

    def mark_analyzed(self, day: date, needs_fix: bool) -> None:
        if day in self.pending_dates:
            self.pending_dates.remove(day)
        self.last_processed_date = day
        if day in self.completed_dates:
            return
        self.completed_dates.append(day)
        self.stats.analyzed_dates += 1
        if needs_fix:
            self.dates_needing_fix.append(day)
            self.stats.dates_needing_fix += 1
        else:
            self.stats.skipped_dates += 1

    def mark_fixed(self, day: date) -> None:
        if day not in self.fixed_dates:
            self.fixed_dates.append(day)
            self.stats.fixed_dates += 1
        self.last_processed_date = day

    def mark_failed(self, day: date, reason: str) -> None:
        self.failed_dates = [entry for entry in self.failed_dates if entry.date != day]
        self.failed_dates.append(FailedDate(date=day, reason=reason))
        self.stats.failed_dates = len(self.failed_dates)
        self.last_processed_date = day

    def unfixed_dates(self) -> List[date]:
        """Flagged dates not yet fixed or failed, oldest first."""
        done = set(self.fixed_dates) | {entry.date for entry in self.failed_dates}
        return sorted(day for day in self.dates_needing_fix if day not in done)


class CheckpointStore:
    """JSON file holding one checkpoint, replaced atomically on every save."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[ReconciliationCheckpoint]:
        if not self.path.exists():
            return None
        try:
            return ReconciliationCheckpoint.model_validate_json(self.path.read_text())
        except (ValidationError, ValueError) as e:
            logger.warning("Ignoring unreadable checkpoint", path=str(self.path), error=str(e))
            return None

    def save(self, checkpoint: ReconciliationCheckpoint) -> None:
        checkpoint.updated_at = datetime.utcnow()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = checkpoint.model_dump_json(by_alias=True, indent=2)

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def reset(self) -> bool:
        """Delete the checkpoint; returns whether one existed."""
        if not self.path.exists():
            return False
        self.path.unlink()
        logger.info("Checkpoint reset", path=str(self.path))
        return True
