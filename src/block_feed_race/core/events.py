from __future__ import annotations

from dataclasses import dataclass


class ArrivalEventError(ValueError):
    """Raised when an arrival event or latency sample is malformed."""


@dataclass(frozen=True, slots=True)
class ArrivalEvent:
    """One source's observation that the block at ``ordering_key`` exists.

    ``observed_time`` is the wall clock (epoch ms) at which this process learned
    of the block; ``claimed_production_time`` is the producer's own timestamp,
    when the source supplies one.
    """

    ordering_key: int
    observed_time: int
    source_id: str
    claimed_production_time: int | None = None

    def __post_init__(self) -> None:
        _require_int("ordering_key", self.ordering_key)
        if self.ordering_key < 0:
            raise ArrivalEventError(f"ordering_key must be >= 0, got {self.ordering_key}")
        _require_int("observed_time", self.observed_time)
        if self.claimed_production_time is not None:
            _require_int("claimed_production_time", self.claimed_production_time)
        if not isinstance(self.source_id, str) or not self.source_id.strip():
            raise ArrivalEventError("source_id must be a non-empty string")

    @property
    def propagation_latency_ms(self) -> int | None:
        if self.claimed_production_time is None:
            return None
        return self.observed_time - self.claimed_production_time

    def to_dict(self) -> dict[str, object]:
        return {
            "ordering_key": self.ordering_key,
            "source_id": self.source_id,
            "observed_time": self.observed_time,
            "claimed_production_time": self.claimed_production_time,
            "propagation_latency_ms": self.propagation_latency_ms,
        }


@dataclass(frozen=True, slots=True)
class LatencySample:
    value_ms: int
    source_id: str
    ordering_key: int
    observed_at: int

    def __post_init__(self) -> None:
        _require_int("value_ms", self.value_ms)
        _require_int("ordering_key", self.ordering_key)
        _require_int("observed_at", self.observed_at)
        if not isinstance(self.source_id, str) or not self.source_id.strip():
            raise ArrivalEventError("source_id must be a non-empty string")

    @classmethod
    def from_arrival(cls, event: ArrivalEvent) -> LatencySample | None:
        latency = event.propagation_latency_ms
        if latency is None:
            return None
        return cls(
            value_ms=latency,
            source_id=event.source_id,
            ordering_key=event.ordering_key,
            observed_at=event.observed_time,
        )


def _require_int(name: str, value: object) -> None:
    # bool is an int subclass; a True ordering key is always a caller bug.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ArrivalEventError(f"{name} must be an integer, got {type(value).__name__}")
