from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from block_feed_race.core.time_utils import utc_now
from block_feed_race.engine.hub import EngineDiagnostics, MeasurementEngine
from block_feed_race.engine.race import RaceOutcome, RaceTally
from block_feed_race.engine.stats import SummaryStats
from block_feed_race.sources.base import ArrivalSource

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[RaceOutcome], None]


@dataclass(frozen=True, slots=True)
class RunSummary:
    started_at: datetime
    finished_at: datetime
    sources: tuple[str, ...]
    stats: dict[str, SummaryStats]
    tally: RaceTally
    diagnostics: EngineDiagnostics
    source_errors: dict[str, str] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class RaceRunner:
    """Runs one task per source against a shared engine until a deadline.

    At the deadline every task is cancelled, pending slots are flushed through
    the engine's eviction path and the remaining outcomes are delivered, so
    nothing correlated before the deadline is lost. A source that fails is
    logged and recorded; the others keep running.
    """

    def __init__(
        self,
        engine: MeasurementEngine,
        sources: Sequence[ArrivalSource],
        *,
        sweep_interval_seconds: float = 1.0,
        report_interval_seconds: float = 0.1,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        unknown = [source.source_id for source in sources if source.source_id not in engine.sources]
        if unknown:
            raise ValueError(f"sources not configured in the engine: {unknown}")
        self._engine = engine
        self._sources = list(sources)
        self._sweep_interval = sweep_interval_seconds
        self._report_interval = report_interval_seconds
        self._on_outcome = on_outcome
        self._errors: dict[str, str] = {}

    async def run(self, duration_seconds: float) -> RunSummary:
        started_at = utc_now()
        logger.info(
            "race started",
            extra={"sources": [source.source_id for source in self._sources], "duration_s": duration_seconds},
        )
        source_tasks = [
            asyncio.create_task(self._consume(source), name=f"source:{source.source_id}")
            for source in self._sources
        ]
        helper_tasks = [
            asyncio.create_task(self._sweep_loop(), name="sweep"),
            asyncio.create_task(self._report_loop(), name="report"),
        ]
        try:
            if source_tasks:
                await asyncio.wait(source_tasks, timeout=duration_seconds)
        finally:
            for task in (*source_tasks, *helper_tasks):
                task.cancel()
            await asyncio.gather(*source_tasks, *helper_tasks, return_exceptions=True)
            flushed = self._engine.close()
            self._deliver()
            if flushed:
                logger.info("evicted %d pending slots at deadline", flushed)

        finished_at = utc_now()
        summary = RunSummary(
            started_at=started_at,
            finished_at=finished_at,
            sources=self._engine.sources,
            stats=self._engine.snapshot_stats_all(),
            tally=self._engine.tally(),
            diagnostics=self._engine.diagnostics(),
            source_errors=dict(self._errors),
        )
        logger.info("race finished", extra={"completed": summary.tally.completed, "ties": summary.tally.ties})
        return summary

    async def _consume(self, source: ArrivalSource) -> None:
        try:
            async for event in source.arrivals():
                self._engine.submit_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._errors[source.source_id] = f"{exc.__class__.__name__}: {exc}"
            logger.exception("source task failed", extra={"source_id": source.source_id})

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self._engine.sweep()

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._report_interval)
            self._deliver()

    def _deliver(self) -> None:
        results = self._engine.poll_latest_correlation_results()
        if self._on_outcome is None:
            return
        for result in results:
            outcome = self._engine.resolve(result)
            try:
                self._on_outcome(outcome)
            except Exception:
                logger.exception("outcome callback failed", extra={"ordering_key": outcome.ordering_key})
