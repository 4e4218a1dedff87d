from __future__ import annotations

from enum import Enum


class SlotState(str, Enum):
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    COMPLETE = "COMPLETE"
    EVICTED_INCOMPLETE = "EVICTED_INCOMPLETE"


class ResultKind(str, Enum):
    COMPLETE = "COMPLETE"
    EVICTED_INCOMPLETE = "EVICTED_INCOMPLETE"


class QualityLabel(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    SLOW = "SLOW"
    UNKNOWN = "UNKNOWN"

    @property
    def rank(self) -> int:
        return _QUALITY_RANK[self]


_QUALITY_RANK = {
    QualityLabel.EXCELLENT: 0,
    QualityLabel.GOOD: 1,
    QualityLabel.FAIR: 2,
    QualityLabel.SLOW: 3,
    QualityLabel.UNKNOWN: 4,
}


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
