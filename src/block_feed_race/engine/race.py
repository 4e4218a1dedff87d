from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from block_feed_race.core.config import parse_thresholds
from block_feed_race.core.enums import QualityLabel
from block_feed_race.engine.correlator import CorrelationResult

_GRADED = (QualityLabel.EXCELLENT, QualityLabel.GOOD, QualityLabel.FAIR)


def classify_latency(latency_ms: int | None, thresholds: Sequence[int]) -> QualityLabel:
    if latency_ms is None:
        return QualityLabel.UNKNOWN
    for label, limit in zip(_GRADED, thresholds):
        if latency_ms < limit:
            return label
    return QualityLabel.SLOW


@dataclass(frozen=True, slots=True)
class SideQuality:
    source_id: str
    observed_time: int
    propagation_latency_ms: int | None
    label: QualityLabel


@dataclass(frozen=True, slots=True)
class RaceOutcome:
    ordering_key: int
    winner_source_id: str | None
    margin_ms: int | None
    sides: tuple[SideQuality, ...]
    overall: QualityLabel
    incomplete: bool = False

    @property
    def is_tie(self) -> bool:
        return not self.incomplete and self.winner_source_id is None and self.margin_ms == 0

    def side(self, source_id: str) -> SideQuality | None:
        for side in self.sides:
            if side.source_id == source_id:
                return side
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "ordering_key": self.ordering_key,
            "winner_source_id": self.winner_source_id,
            "margin_ms": self.margin_ms,
            "incomplete": self.incomplete,
            "overall": self.overall.value,
            "sides": [
                {
                    "source_id": side.source_id,
                    "observed_time": side.observed_time,
                    "propagation_latency_ms": side.propagation_latency_ms,
                    "quality": side.label.value,
                }
                for side in self.sides
            ],
        }


class RaceResolver:
    """Turns correlation results into race outcomes.

    Each side is graded on its own propagation latency. The overall label of a
    pair is the best of the per-side labels: it answers "how fast could this
    block be known at all", while the per-side labels stay available so a slow
    feed is never hidden behind a fast one.
    """

    def __init__(self, quality_thresholds: Sequence[int] = (900, 1200, 2000)) -> None:
        thresholds = parse_thresholds(quality_thresholds, name="quality_thresholds")
        if len(thresholds) != len(_GRADED):
            raise ValueError(f"quality_thresholds needs exactly {len(_GRADED)} values, got {thresholds}")
        self._thresholds = thresholds

    def resolve(self, result: CorrelationResult) -> RaceOutcome:
        sides = tuple(
            SideQuality(
                source_id=event.source_id,
                observed_time=event.observed_time,
                propagation_latency_ms=event.propagation_latency_ms,
                label=classify_latency(event.propagation_latency_ms, self._thresholds),
            )
            for event in result.events
        )
        overall = min((side.label for side in sides), key=lambda label: label.rank, default=QualityLabel.UNKNOWN)

        if not result.is_complete:
            return RaceOutcome(
                ordering_key=result.ordering_key,
                winner_source_id=None,
                margin_ms=None,
                sides=sides,
                overall=overall,
                incomplete=True,
            )
        return RaceOutcome(
            ordering_key=result.ordering_key,
            winner_source_id=result.winner_source_id,
            margin_ms=result.margin_ms,
            sides=sides,
            overall=overall,
        )


@dataclass(slots=True)
class RaceTally:
    """Running scoreboard over race outcomes."""

    wins: dict[str, int] = field(default_factory=dict)
    lead_ms: dict[str, int] = field(default_factory=dict)
    ties: int = 0
    incomplete: int = 0
    completed: int = 0

    def add(self, outcome: RaceOutcome) -> None:
        if outcome.incomplete:
            self.incomplete += 1
            return
        self.completed += 1
        if outcome.is_tie:
            self.ties += 1
            return
        if outcome.winner_source_id is None:
            # single-source run: nothing to race against
            return
        winner = outcome.winner_source_id
        self.wins[winner] = self.wins.get(winner, 0) + 1
        self.lead_ms[winner] = self.lead_ms.get(winner, 0) + (outcome.margin_ms or 0)

    @property
    def decided(self) -> int:
        return sum(self.wins.values())

    def win_rate(self, source_id: str) -> float:
        """Share of decided races won; ties and incomplete slots are excluded."""
        if self.decided == 0:
            return 0.0
        return self.wins.get(source_id, 0) / self.decided

    def average_lead(self, source_id: str) -> float | None:
        wins = self.wins.get(source_id, 0)
        if wins == 0:
            return None
        return self.lead_ms[source_id] / wins

    def to_dict(self) -> dict[str, object]:
        return {
            "completed": self.completed,
            "ties": self.ties,
            "incomplete": self.incomplete,
            "wins": dict(self.wins),
            "average_lead_ms": {source: self.average_lead(source) for source in self.wins},
        }
