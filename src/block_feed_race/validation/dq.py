from __future__ import annotations

from dataclasses import dataclass

import polars as pl

RESULT_COLUMNS: tuple[str, ...] = (
    "ordering_key",
    "source_id",
    "kind",
    "observed_time",
    "claimed_production_time",
    "propagation_latency_ms",
    "winner_source_id",
    "margin_ms",
)
RESULT_REQUIRED: tuple[str, ...] = ("ordering_key", "source_id", "kind", "observed_time")

SAMPLE_COLUMNS: tuple[str, ...] = ("ordering_key", "source_id", "value_ms", "observed_at")


class DataQualityError(RuntimeError):
    """Raised when mandatory data quality constraints fail."""


@dataclass(frozen=True, slots=True)
class DQResult:
    row_count: int
    min_key: int | None
    max_key: int | None


class DQValidator:
    def validate_results(self, frame: pl.DataFrame) -> DQResult:
        self._validate_columns(frame, RESULT_COLUMNS)
        self._validate_unique(frame, ["ordering_key", "source_id"])
        self._validate_non_null(frame, RESULT_REQUIRED)
        return self._summary(frame)

    def validate_samples(self, frame: pl.DataFrame) -> DQResult:
        self._validate_columns(frame, SAMPLE_COLUMNS)
        self._validate_non_null(frame, SAMPLE_COLUMNS)
        negative = frame.filter(pl.col("value_ms") < 0).height
        if negative > 0:
            raise DataQualityError(f"Found {negative} negative latency samples")
        return self._summary(frame)

    @staticmethod
    def _summary(frame: pl.DataFrame) -> DQResult:
        if frame.height == 0:
            return DQResult(row_count=0, min_key=None, max_key=None)
        return DQResult(
            row_count=frame.height,
            min_key=int(frame.select(pl.col("ordering_key").min()).item()),
            max_key=int(frame.select(pl.col("ordering_key").max()).item()),
        )

    @staticmethod
    def _validate_columns(frame: pl.DataFrame, expected: tuple[str, ...]) -> None:
        missing = sorted(set(expected) - set(frame.columns))
        if missing:
            raise DataQualityError(f"Missing columns: {', '.join(missing)}")

    @staticmethod
    def _validate_unique(frame: pl.DataFrame, keys: list[str]) -> None:
        duplicates = (
            frame.group_by(keys)
            .len()
            .filter(pl.col("len") > 1)
            .select(pl.len())
            .item()
        )
        if duplicates > 0:
            raise DataQualityError(f"Found {duplicates} duplicated ({', '.join(keys)}) rows")

    @staticmethod
    def _validate_non_null(frame: pl.DataFrame, columns: tuple[str, ...]) -> None:
        null_violations = []
        for column in columns:
            null_count = frame.select(pl.col(column).is_null().sum()).item()
            if null_count > 0:
                null_violations.append(f"{column}={null_count}")
        if null_violations:
            joined = ", ".join(null_violations)
            raise DataQualityError(f"Required column null violations: {joined}")
