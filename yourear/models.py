"""Value types shared by the threshold seeker and the test session.

Everything in here is immutable. The session owns the mutable bookkeeping and
hands out these objects as snapshots.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, Optional, Sequence, Tuple

from yourear import interpretation


class Ear(str, Enum):
    RIGHT = 'right'
    LEFT = 'left'


# Right ear first, by audiometric convention.
EAR_ORDER = (Ear.RIGHT, Ear.LEFT)


class Phase(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETE = 'complete'


@dataclass(frozen=True)
class Cell:
    """One (frequency, ear) unit of the sweep."""

    frequency: int
    ear: Ear


def iter_cells(frequencies: Sequence[int]) -> Iterator[Cell]:
    """Yield the cells of a sweep in test order.

    Every configured frequency is tested on the right ear before the left
    ear is started.
    """
    for ear in EAR_ORDER:
        for freq in frequencies:
            yield Cell(freq, ear)


@dataclass(frozen=True)
class Threshold:
    """Finalized result of one cell.

    ``level`` is None when there was no response even at the loudness
    ceiling. ``timed_out`` tells whether the last "not heard" of such a cell
    came from the response timer instead of an explicit answer.
    """

    frequency: int
    ear: Ear
    level: Optional[float]
    timed_out: bool = False

    @property
    def cell(self) -> Cell:
        return Cell(self.frequency, self.ear)


@dataclass(frozen=True)
class FrequencyThreshold:
    frequency: int
    left_ear_threshold: Optional[float] = None
    right_ear_threshold: Optional[float] = None


@dataclass(frozen=True)
class TestResult:
    """Audiogram of a (possibly partial) session, one record per frequency."""

    __test__ = False

    created_at: datetime
    updated_at: datetime
    thresholds: Tuple[FrequencyThreshold, ...] = field(default_factory=tuple)

    @classmethod
    def from_thresholds(cls, frequencies: Sequence[int],
                        recorded: Sequence[Threshold],
                        created_at: Optional[datetime] = None) -> 'TestResult':
        """Merge recorded cells into per-frequency records.

        The records follow ``frequencies`` regardless of the order in which
        cells were finalized; cells without a recorded threshold are None.
        """
        by_cell = {t.cell: t.level for t in recorded}
        records = tuple(
            FrequencyThreshold(
                frequency=freq,
                left_ear_threshold=by_cell.get(Cell(freq, Ear.LEFT)),
                right_ear_threshold=by_cell.get(Cell(freq, Ear.RIGHT)),
            )
            for freq in frequencies
        )
        now = datetime.now(timezone.utc)
        return cls(created_at=created_at or now, updated_at=now,
                   thresholds=records)

    def thresholds_for(self, ear) -> Dict[int, Optional[float]]:
        """Return ``{frequency: level}`` for one ear."""
        ear = Ear(ear)
        if ear is Ear.LEFT:
            return {r.frequency: r.left_ear_threshold for r in self.thresholds}
        return {r.frequency: r.right_ear_threshold for r in self.thresholds}

    def pure_tone_average(self, ear) -> Optional[float]:
        return interpretation.pure_tone_average(self.thresholds_for(ear))

    def to_dict(self) -> dict:
        return {
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'thresholds': [
                {
                    'frequency': r.frequency,
                    'leftEar': r.left_ear_threshold,
                    'rightEar': r.right_ear_threshold,
                }
                for r in self.thresholds
            ],
        }


@dataclass(frozen=True)
class SessionState:
    """Read-only snapshot of what the session is doing right now."""

    current_frequency: int
    current_ear: Ear
    current_level: float
    is_presenting: bool
    phase: Phase
    awaiting_response: bool = False
