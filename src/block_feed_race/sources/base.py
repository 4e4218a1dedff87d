from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from block_feed_race.core.events import ArrivalEvent


@runtime_checkable
class ArrivalSource(Protocol):
    """Source adapter contract.

    An adapter owns one feed and yields normalized ``ArrivalEvent`` objects,
    stamping ``observed_time`` at the moment it learned of the block. It
    recovers from transient transport errors itself; the engine only ever sees
    events, never failures. Every await inside ``arrivals`` must be bounded by
    data readiness or a timeout so the runner can cancel it at the deadline.
    """

    source_id: str

    def arrivals(self) -> AsyncIterator[ArrivalEvent]: ...


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    initial_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.factor ** max(attempt, 0)), self.max_delay)
