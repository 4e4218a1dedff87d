from __future__ import annotations

import math
import threading
from bisect import bisect_right
from collections.abc import Sequence
from dataclasses import dataclass, field
from fractions import Fraction

from block_feed_race.core.config import default_bucket_labels, parse_thresholds
from block_feed_race.core.events import LatencySample

PERCENTILES: tuple[tuple[str, float], ...] = (
    ("p50", 0.50),
    ("p90", 0.90),
    ("p95", 0.95),
    ("p99", 0.99),
)


def percentile(sorted_values: Sequence[int], p: float) -> int:
    """Nearest-rank percentile on a zero-based index: ``sorted[floor(p * (n - 1))]``.

    The index is clamped to ``[0, n - 1]`` so ``p == 1.0`` returns the maximum.
    ``p`` is converted through its decimal string so 0.95 means exactly 95/100.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty sequence")
    if not 0.0 <= p <= 1.0:
        raise ValueError(f"percentile must be within [0, 1], got {p}")
    last = len(sorted_values) - 1
    index = math.floor(Fraction(str(p)) * last)
    return sorted_values[min(max(index, 0), last)]


@dataclass(frozen=True, slots=True)
class SummaryStats:
    count: int
    avg: float | None
    min: int | None
    max: int | None
    p50: int | None
    p90: int | None
    p95: int | None
    p99: int | None
    buckets: dict[str, int] = field(default_factory=dict)
    filtered: int = 0

    @classmethod
    def empty(cls, labels: Sequence[str], filtered: int = 0) -> SummaryStats:
        return cls(
            count=0,
            avg=None,
            min=None,
            max=None,
            p50=None,
            p90=None,
            p95=None,
            p99=None,
            buckets=dict.fromkeys(labels, 0),
            filtered=filtered,
        )

    def bucket_share(self, label: str) -> float:
        if self.count == 0:
            return 0.0
        return self.buckets.get(label, 0) / self.count

    def to_dict(self) -> dict[str, object]:
        return {
            "count": self.count,
            "avg": self.avg,
            "min": self.min,
            "max": self.max,
            "p50": self.p50,
            "p90": self.p90,
            "p95": self.p95,
            "p99": self.p99,
            "buckets": dict(self.buckets),
            "filtered": self.filtered,
        }


@dataclass(frozen=True, slots=True)
class RecordOutcome:
    accepted: bool
    reason: str | None = None
    running_average: float | None = None
    running_count: int = 0


@dataclass(slots=True)
class _SourceSeries:
    values: list[int] = field(default_factory=list)
    running_sum: int = 0
    filtered: int = 0


class LatencyStatsAggregator:
    """Retains plausible latency samples per source and summarises them on demand.

    ``record`` keeps a running sum and count so live progress never forces a
    sort; percentiles are computed only in ``snapshot``. Implausible samples
    (negative, or not below ``max_plausible_ms``) are counted and dropped.
    """

    def __init__(
        self,
        max_plausible_ms: int = 10_000,
        bucket_thresholds: Sequence[int] = (500, 1000, 2000),
        bucket_labels: Sequence[str] | None = None,
        progress_every: int = 0,
    ) -> None:
        if max_plausible_ms <= 0:
            raise ValueError("max_plausible_ms must be > 0")
        self._max_plausible_ms = max_plausible_ms
        self._thresholds = parse_thresholds(bucket_thresholds, name="bucket_thresholds")
        self._labels = tuple(bucket_labels) if bucket_labels else default_bucket_labels(self._thresholds)
        if len(self._labels) != len(self._thresholds) + 1:
            raise ValueError("bucket_labels must have one more entry than bucket_thresholds")
        self._progress_every = progress_every
        self._lock = threading.Lock()
        self._series: dict[str, _SourceSeries] = {}

    @property
    def bucket_labels(self) -> tuple[str, ...]:
        return self._labels

    def is_plausible(self, value_ms: int) -> bool:
        return 0 <= value_ms < self._max_plausible_ms

    def record(self, sample: LatencySample) -> RecordOutcome:
        plausible = self.is_plausible(sample.value_ms)
        with self._lock:
            series = self._series.get(sample.source_id)
            if series is None:
                series = _SourceSeries()
                self._series[sample.source_id] = series
            if not plausible:
                series.filtered += 1
                return RecordOutcome(accepted=False, reason="implausible", running_count=len(series.values))
            series.values.append(sample.value_ms)
            series.running_sum += sample.value_ms
            count = len(series.values)
            running_sum = series.running_sum

        if self._progress_every and count % self._progress_every == 0:
            return RecordOutcome(accepted=True, running_average=running_sum / count, running_count=count)
        return RecordOutcome(accepted=True, running_count=count)

    def running_average(self, source_id: str) -> float | None:
        with self._lock:
            series = self._series.get(source_id)
            if series is None or not series.values:
                return None
            return series.running_sum / len(series.values)

    def filtered_count(self, source_id: str | None = None) -> int:
        with self._lock:
            if source_id is None:
                return sum(series.filtered for series in self._series.values())
            series = self._series.get(source_id)
            return series.filtered if series else 0

    def sources(self) -> list[str]:
        with self._lock:
            return list(self._series)

    def snapshot(self, source_id: str | None = None) -> SummaryStats:
        """Summarise one source, or every retained sample when ``source_id`` is None."""
        with self._lock:
            if source_id is None:
                values = [value for series in self._series.values() for value in series.values]
                filtered = sum(series.filtered for series in self._series.values())
            else:
                series = self._series.get(source_id)
                values = list(series.values) if series else []
                filtered = series.filtered if series else 0
        return self._summarise(values, filtered)

    def snapshot_all(self) -> dict[str, SummaryStats]:
        return {source_id: self.snapshot(source_id) for source_id in self.sources()}

    def _summarise(self, values: list[int], filtered: int) -> SummaryStats:
        if not values:
            return SummaryStats.empty(self._labels, filtered=filtered)

        ordered = sorted(values)
        buckets = dict.fromkeys(self._labels, 0)
        for value in ordered:
            buckets[self._labels[bisect_right(self._thresholds, value)]] += 1

        quantiles = {name: percentile(ordered, p) for name, p in PERCENTILES}
        return SummaryStats(
            count=len(ordered),
            avg=sum(ordered) / len(ordered),
            min=ordered[0],
            max=ordered[-1],
            buckets=buckets,
            filtered=filtered,
            **quantiles,
        )
