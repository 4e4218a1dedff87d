from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import polars as pl

from block_feed_race.core.events import LatencySample
from block_feed_race.engine.correlator import CorrelationResult
from block_feed_race.validation.dq import DQValidator

logger = logging.getLogger(__name__)

RESULT_SCHEMA: dict[str, pl.DataType] = {
    "ordering_key": pl.Int64(),
    "source_id": pl.String(),
    "kind": pl.String(),
    "observed_time": pl.Int64(),
    "claimed_production_time": pl.Int64(),
    "propagation_latency_ms": pl.Int64(),
    "winner_source_id": pl.String(),
    "margin_ms": pl.Int64(),
}

SAMPLE_SCHEMA: dict[str, pl.DataType] = {
    "ordering_key": pl.Int64(),
    "source_id": pl.String(),
    "value_ms": pl.Int64(),
    "observed_at": pl.Int64(),
}


@dataclass(frozen=True, slots=True)
class RunExport:
    results_path: Path
    samples_path: Path
    result_rows: int
    sample_rows: int
    content_hash: str


def results_frame(results: Sequence[CorrelationResult]) -> pl.DataFrame:
    """One row per (ordering_key, source_id) that actually arrived."""
    rows = [
        {
            "ordering_key": result.ordering_key,
            "source_id": event.source_id,
            "kind": result.kind.value,
            "observed_time": event.observed_time,
            "claimed_production_time": event.claimed_production_time,
            "propagation_latency_ms": event.propagation_latency_ms,
            "winner_source_id": result.winner_source_id,
            "margin_ms": result.margin_ms,
        }
        for result in results
        for event in result.events
    ]
    return pl.DataFrame(rows, schema=RESULT_SCHEMA).sort(["ordering_key", "source_id"])


def samples_frame(samples: Sequence[LatencySample]) -> pl.DataFrame:
    rows = [
        {
            "ordering_key": sample.ordering_key,
            "source_id": sample.source_id,
            "value_ms": sample.value_ms,
            "observed_at": sample.observed_at,
        }
        for sample in samples
    ]
    return pl.DataFrame(rows, schema=SAMPLE_SCHEMA)


class AtomicParquetWriter:
    def __init__(self, root_dir: Path, validator: DQValidator) -> None:
        self._root_dir = root_dir
        self._validator = validator

    def export_run(
        self,
        run_id: str,
        results: Sequence[CorrelationResult],
        samples: Sequence[LatencySample],
    ) -> RunExport:
        run_dir = self.run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)

        results_df = results_frame(results)
        samples_df = samples_frame(samples)
        result_dq = self._validator.validate_results(results_df)
        sample_dq = self._validator.validate_samples(samples_df)

        results_path = self._write_atomic(results_df, run_dir / "results.parquet")
        samples_path = self._write_atomic(samples_df, run_dir / "samples.parquet")

        export = RunExport(
            results_path=results_path,
            samples_path=samples_path,
            result_rows=result_dq.row_count,
            sample_rows=sample_dq.row_count,
            content_hash=self._file_hash(results_path),
        )
        logger.info(
            "exported run",
            extra={"run_id": run_id, "path": str(run_dir), "result_rows": export.result_rows},
        )
        return export

    def run_dir(self, run_id: str) -> Path:
        return self._root_dir / "runs" / f"run_id={run_id}"

    def _write_atomic(self, frame: pl.DataFrame, final_path: Path) -> Path:
        tmp_dir = self._root_dir / ".tmp"
        tmp_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = tmp_dir / f"{uuid.uuid4().hex}.parquet"

        frame.write_parquet(tmp_path, compression="zstd", statistics=True)
        tmp_path.replace(final_path)
        return final_path

    @staticmethod
    def _file_hash(path: Path) -> str:
        digest = hashlib.sha256()
        with path.open("rb") as handle:
            while chunk := handle.read(1024 * 1024):
                digest.update(chunk)
        return digest.hexdigest()
