from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from block_feed_race.core.config import EngineConfig
from block_feed_race.core.events import ArrivalEvent, ArrivalEventError, LatencySample
from block_feed_race.core.time_utils import monotonic_ms
from block_feed_race.engine.correlator import CorrelationResult, Correlator, CorrelatorStats
from block_feed_race.engine.race import RaceOutcome, RaceResolver, RaceTally
from block_feed_race.engine.stats import LatencyStatsAggregator, RecordOutcome, SummaryStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EngineDiagnostics:
    correlator: CorrelatorStats
    rejected: int
    filtered: dict[str, int]


class MeasurementEngine:
    """Ingestion and query surface shared by every source task.

    Source adapters call ``submit_arrival`` / ``submit_latency_sample`` as soon
    as they learn something; the reporting side drains closed correlations with
    ``poll_latest_correlation_results`` and reads statistics with
    ``snapshot_stats`` / ``snapshot_stats_all``.

    An accepted arrival that carries a production claim also feeds its
    propagation latency into the aggregator. Malformed input is counted and
    logged, never raised to the adapter.
    """

    def __init__(self, config: EngineConfig, clock: Callable[[], int] = monotonic_ms) -> None:
        self._config = config
        self._correlator = Correlator(config.sources, retention_ms=config.retention_ms, clock=clock)
        self._aggregator = LatencyStatsAggregator(
            max_plausible_ms=config.max_plausible_ms,
            bucket_thresholds=config.bucket_thresholds,
            bucket_labels=config.bucket_labels,
            progress_every=config.progress_every,
        )
        self._resolver = RaceResolver(config.quality_thresholds)
        self._lock = threading.Lock()
        self._outbox: deque[CorrelationResult] = deque()
        self._history: list[CorrelationResult] = []
        self._samples: list[LatencySample] = []
        self._tally = RaceTally()
        self._rejected = 0

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def sources(self) -> tuple[str, ...]:
        return self._config.sources

    @property
    def resolver(self) -> RaceResolver:
        return self._resolver

    # ingestion contract

    def submit_arrival(
        self,
        ordering_key: int,
        source_id: str,
        observed_time: int,
        claimed_production_time: int | None = None,
    ) -> CorrelationResult | None:
        try:
            event = ArrivalEvent(
                ordering_key=ordering_key,
                observed_time=observed_time,
                source_id=source_id,
                claimed_production_time=claimed_production_time,
            )
        except ArrivalEventError as exc:
            self._count_rejected()
            logger.warning("rejected arrival", extra={"source_id": source_id, "error": str(exc)})
            return None
        return self.submit_event(event)

    def submit_event(self, event: ArrivalEvent) -> CorrelationResult | None:
        outcome = self._correlator.offer(event)
        closed = self._correlator.drain_evicted()
        if outcome.result is not None:
            closed.append(outcome.result)
        if closed:
            self._publish(closed)

        if outcome.accepted:
            sample = LatencySample.from_arrival(event)
            if sample is not None:
                self._record(sample)
        return outcome.result

    def submit_latency_sample(
        self,
        value_ms: int,
        source_id: str,
        ordering_key: int,
        observed_at: int,
    ) -> RecordOutcome | None:
        try:
            sample = LatencySample(
                value_ms=value_ms,
                source_id=source_id,
                ordering_key=ordering_key,
                observed_at=observed_at,
            )
        except ArrivalEventError as exc:
            self._count_rejected()
            logger.warning("rejected latency sample", extra={"source_id": source_id, "error": str(exc)})
            return None
        return self._record(sample)

    # query contract

    def poll_latest_correlation_results(self) -> list[CorrelationResult]:
        with self._lock:
            drained = list(self._outbox)
            self._outbox.clear()
        return drained

    def snapshot_stats(self, source_id: str) -> SummaryStats:
        return self._aggregator.snapshot(source_id)

    def snapshot_stats_all(self) -> dict[str, SummaryStats]:
        known = list(self._config.sources)
        known.extend(source for source in self._aggregator.sources() if source not in known)
        return {source: self._aggregator.snapshot(source) for source in known}

    def snapshot_stats_combined(self) -> SummaryStats:
        return self._aggregator.snapshot()

    def resolve(self, result: CorrelationResult) -> RaceOutcome:
        return self._resolver.resolve(result)

    def tally(self) -> RaceTally:
        with self._lock:
            return RaceTally(
                wins=dict(self._tally.wins),
                lead_ms=dict(self._tally.lead_ms),
                ties=self._tally.ties,
                incomplete=self._tally.incomplete,
                completed=self._tally.completed,
            )

    def history(self) -> list[CorrelationResult]:
        with self._lock:
            return list(self._history)

    def samples(self) -> list[LatencySample]:
        with self._lock:
            return list(self._samples)

    def diagnostics(self) -> EngineDiagnostics:
        with self._lock:
            rejected = self._rejected
        filtered = {source: self._aggregator.filtered_count(source) for source in self._aggregator.sources()}
        return EngineDiagnostics(correlator=self._correlator.stats(), rejected=rejected, filtered=filtered)

    # lifecycle

    def sweep(self) -> int:
        evicted = self._correlator.sweep()
        if evicted:
            self._publish(evicted)
        return len(evicted)

    def close(self) -> int:
        """Evict every pending slot; called once at the run deadline."""
        evicted = self._correlator.flush()
        if evicted:
            self._publish(evicted)
        return len(evicted)

    def _record(self, sample: LatencySample) -> RecordOutcome:
        outcome = self._aggregator.record(sample)
        if outcome.accepted:
            with self._lock:
                self._samples.append(sample)
        else:
            logger.debug(
                "filtered implausible latency sample",
                extra={"source_id": sample.source_id, "ordering_key": sample.ordering_key, "value_ms": sample.value_ms},
            )
        if outcome.running_average is not None:
            logger.info(
                "running average %.1fms over %d samples (%s)",
                outcome.running_average,
                outcome.running_count,
                sample.source_id,
            )
        return outcome

    def _publish(self, results: list[CorrelationResult]) -> None:
        outcomes = [self._resolver.resolve(result) for result in results]
        with self._lock:
            self._outbox.extend(results)
            self._history.extend(results)
            for outcome in outcomes:
                self._tally.add(outcome)

    def _count_rejected(self) -> None:
        with self._lock:
            self._rejected += 1
