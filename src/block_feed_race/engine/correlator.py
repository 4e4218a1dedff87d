from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from block_feed_race.core.config import ConfigurationError
from block_feed_race.core.enums import ResultKind, SlotState
from block_feed_race.core.events import ArrivalEvent
from block_feed_race.core.time_utils import monotonic_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CorrelationResult:
    ordering_key: int
    events: tuple[ArrivalEvent, ...]
    kind: ResultKind
    winner_source_id: str | None = None
    margin_ms: int | None = None
    missing_sources: tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.kind is ResultKind.COMPLETE

    def event_for(self, source_id: str) -> ArrivalEvent | None:
        for event in self.events:
            if event.source_id == source_id:
                return event
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "ordering_key": self.ordering_key,
            "kind": self.kind.value,
            "winner_source_id": self.winner_source_id,
            "margin_ms": self.margin_ms,
            "missing_sources": list(self.missing_sources),
            "events": [event.to_dict() for event in self.events],
        }


@dataclass(slots=True)
class CorrelationSlot:
    ordering_key: int
    created_at: int
    sides: dict[str, ArrivalEvent | None]
    state: SlotState = SlotState.PARTIALLY_FILLED

    @classmethod
    def open(cls, event: ArrivalEvent, sources: Sequence[str], created_at: int) -> CorrelationSlot:
        sides: dict[str, ArrivalEvent | None] = dict.fromkeys(sources)
        sides[event.source_id] = event
        return cls(ordering_key=event.ordering_key, created_at=created_at, sides=sides)

    def fill(self, event: ArrivalEvent) -> bool:
        if self.sides[event.source_id] is not None:
            return False
        self.sides[event.source_id] = event
        return True

    @property
    def is_complete(self) -> bool:
        return all(side is not None for side in self.sides.values())

    def present(self) -> tuple[ArrivalEvent, ...]:
        return tuple(side for side in self.sides.values() if side is not None)

    def missing(self) -> tuple[str, ...]:
        return tuple(source for source, side in self.sides.items() if side is None)


@dataclass(slots=True)
class CorrelatorStats:
    completed: int = 0
    evicted: int = 0
    duplicates: int = 0
    late: int = 0
    unknown_source: int = 0
    pending: int = 0


@dataclass(frozen=True, slots=True)
class IngestOutcome:
    accepted: bool
    result: CorrelationResult | None = None
    reason: str | None = None


@dataclass(slots=True)
class _IngestDiagnostic:
    reason: str
    event: ArrivalEvent
    extra: dict[str, object] = field(default_factory=dict)


def decide_winner(events: Iterable[ArrivalEvent]) -> tuple[str | None, int | None]:
    """Return ``(winner_source_id, margin_ms)`` for a set of observations.

    The winner is the source with the strictly smallest ``observed_time``; equal
    minima are a tie. The margin is the gap between the earliest observation and
    the runner-up, which for two sources is ``|observed_a - observed_b|``.
    Processing order never matters, only the recorded timestamps.
    """
    ordered = sorted(events, key=lambda event: (event.observed_time, event.source_id))
    if len(ordered) < 2:
        return None, None
    first, second = ordered[0], ordered[1]
    margin = second.observed_time - first.observed_time
    if margin == 0:
        return None, 0
    return first.source_id, margin


class Correlator:
    """Keyed merge of arrival events across a fixed set of sources.

    Each ordering key gets a slot that fills one side per source. A slot that
    fills completely is emitted as a COMPLETE result; a slot older than the
    retention window is evicted and emitted as an EVICTED_INCOMPLETE result
    with the sides that did arrive. Closed keys are remembered for one more
    retention window; after that they fold into a watermark, since ordering
    keys only grow. Any key at or below the watermark without a pending slot
    is a late event and is discarded, so a closed key never opens a new slot.

    All table mutations happen under one lock, and nothing is logged while it
    is held.
    """

    def __init__(
        self,
        sources: Sequence[str],
        retention_ms: int,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        if not sources:
            raise ConfigurationError("correlator needs at least one source")
        if len(set(sources)) != len(sources):
            raise ConfigurationError(f"duplicate source ids: {list(sources)}")
        if retention_ms <= 0:
            raise ConfigurationError("retention_ms must be > 0")
        self._sources = tuple(sources)
        self._retention_ms = retention_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: dict[int, CorrelationSlot] = {}
        self._closed: OrderedDict[int, int] = OrderedDict()
        self._closed_floor = -1
        self._evicted: list[CorrelationResult] = []
        self._stats = CorrelatorStats()

    @property
    def sources(self) -> tuple[str, ...]:
        return self._sources

    @property
    def retention_ms(self) -> int:
        return self._retention_ms

    def stats(self) -> CorrelatorStats:
        with self._lock:
            return CorrelatorStats(
                completed=self._stats.completed,
                evicted=self._stats.evicted,
                duplicates=self._stats.duplicates,
                late=self._stats.late,
                unknown_source=self._stats.unknown_source,
                pending=len(self._slots),
            )

    def pending_keys(self) -> list[int]:
        with self._lock:
            return list(self._slots)

    def ingest(self, event: ArrivalEvent) -> CorrelationResult | None:
        return self.offer(event).result

    def offer(self, event: ArrivalEvent) -> IngestOutcome:
        """Like ``ingest`` but also reports whether the event was kept."""
        diagnostic: _IngestDiagnostic | None = None
        result: CorrelationResult | None = None

        with self._lock:
            now = self._clock()
            self._evict_expired_locked(now)

            if event.source_id not in self._sources:
                self._stats.unknown_source += 1
                diagnostic = _IngestDiagnostic("unknown_source", event)
            elif self._is_closed_locked(event.ordering_key):
                self._stats.late += 1
                diagnostic = _IngestDiagnostic("late_event", event)
            else:
                slot = self._slots.get(event.ordering_key)
                if slot is None:
                    slot = CorrelationSlot.open(event, self._sources, created_at=now)
                    self._slots[event.ordering_key] = slot
                elif not slot.fill(event):
                    self._stats.duplicates += 1
                    kept = slot.sides[event.source_id]
                    diagnostic = _IngestDiagnostic(
                        "duplicate_arrival",
                        event,
                        {"kept_observed_time": kept.observed_time if kept else None},
                    )
                if diagnostic is None and slot.is_complete:
                    result = self._close_locked(slot, SlotState.COMPLETE, now)

        if diagnostic is None:
            return IngestOutcome(accepted=True, result=result)

        logger.debug(
            "discarded arrival event",
            extra={
                "reason": diagnostic.reason,
                "ordering_key": diagnostic.event.ordering_key,
                "source_id": diagnostic.event.source_id,
                **diagnostic.extra,
            },
        )
        return IngestOutcome(accepted=False, reason=diagnostic.reason)

    def drain_evicted(self) -> list[CorrelationResult]:
        with self._lock:
            drained, self._evicted = self._evicted, []
        return drained

    def sweep(self, now: int | None = None) -> list[CorrelationResult]:
        """Evict expired slots and return every eviction not yet drained."""
        with self._lock:
            self._evict_expired_locked(self._clock() if now is None else now)
            drained, self._evicted = self._evicted, []
        if drained:
            logger.info("evicted incomplete slots", extra={"count": len(drained)})
        return drained

    def flush(self) -> list[CorrelationResult]:
        """Evict every pending slot regardless of age (run deadline)."""
        with self._lock:
            now = self._clock()
            for slot in list(self._slots.values()):
                self._evicted.append(self._close_locked(slot, SlotState.EVICTED_INCOMPLETE, now))
            drained, self._evicted = self._evicted, []
        if drained:
            logger.info("flushed pending slots at deadline", extra={"count": len(drained)})
        return drained

    def _evict_expired_locked(self, now: int) -> None:
        cutoff = now - self._retention_ms
        # Slots are inserted in creation order, so the first young slot ends the scan.
        for slot in list(self._slots.values()):
            if slot.created_at > cutoff:
                break
            self._evicted.append(self._close_locked(slot, SlotState.EVICTED_INCOMPLETE, now))

        while self._closed:
            _, closed_at = next(iter(self._closed.items()))
            if closed_at > cutoff:
                break
            expired_key, _ = self._closed.popitem(last=False)
            self._closed_floor = max(self._closed_floor, expired_key)

    def _is_closed_locked(self, ordering_key: int) -> bool:
        if ordering_key in self._closed:
            return True
        return ordering_key <= self._closed_floor and ordering_key not in self._slots

    def _close_locked(self, slot: CorrelationSlot, state: SlotState, now: int) -> CorrelationResult:
        del self._slots[slot.ordering_key]
        self._closed[slot.ordering_key] = now
        slot.state = state
        events = slot.present()

        if state is SlotState.COMPLETE:
            self._stats.completed += 1
            winner, margin = decide_winner(events)
            return CorrelationResult(
                ordering_key=slot.ordering_key,
                events=events,
                kind=ResultKind.COMPLETE,
                winner_source_id=winner,
                margin_ms=margin,
            )

        self._stats.evicted += 1
        return CorrelationResult(
            ordering_key=slot.ordering_key,
            events=events,
            kind=ResultKind.EVICTED_INCOMPLETE,
            missing_sources=slot.missing(),
        )
