import threading

import pytest

from block_feed_race.core.config import ConfigurationError
from block_feed_race.core.enums import ResultKind
from block_feed_race.core.events import ArrivalEvent
from block_feed_race.engine.correlator import Correlator, decide_winner


def _event(key: int, source: str, observed: int, claimed: int | None = None) -> ArrivalEvent:
    return ArrivalEvent(ordering_key=key, observed_time=observed, source_id=source, claimed_production_time=claimed)


def test_result_emitted_only_when_both_sides_arrive(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)

    assert correlator.ingest(_event(10, "A", 100)) is None
    assert correlator.pending_keys() == [10]

    result = correlator.ingest(_event(10, "B", 150))

    assert result is not None
    assert result.kind is ResultKind.COMPLETE
    assert result.winner_source_id == "A"
    assert result.margin_ms == 50
    assert correlator.pending_keys() == []
    assert correlator.stats().completed == 1


def test_winner_follows_timestamps_not_processing_order(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)

    correlator.ingest(_event(1, "A", 200))
    result = correlator.ingest(_event(1, "B", 120))

    assert result is not None
    assert result.winner_source_id == "B"
    assert result.margin_ms == 80


def test_equal_observed_times_are_a_tie(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)

    correlator.ingest(_event(5, "A", 300))
    result = correlator.ingest(_event(5, "B", 300))

    assert result is not None
    assert result.winner_source_id is None
    assert result.margin_ms == 0


def test_first_arrival_per_side_is_kept(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)

    correlator.ingest(_event(7, "A", 100))
    duplicate = correlator.offer(_event(7, "A", 50))
    result = correlator.ingest(_event(7, "B", 120))

    assert not duplicate.accepted
    assert duplicate.reason == "duplicate_arrival"
    assert result is not None
    event_a = result.event_for("A")
    assert event_a is not None and event_a.observed_time == 100
    assert result.winner_source_id == "A"
    assert result.margin_ms == 20
    assert correlator.stats().duplicates == 1


def test_one_sided_slot_is_evicted_after_retention(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)
    correlator.ingest(_event(42, "A", 100, claimed=0))

    clock.advance(999)
    assert correlator.sweep() == []

    clock.advance(1)
    evicted = correlator.sweep()

    assert len(evicted) == 1
    result = evicted[0]
    assert result.kind is ResultKind.EVICTED_INCOMPLETE
    assert result.ordering_key == 42
    assert result.winner_source_id is None
    assert result.margin_ms is None
    assert result.missing_sources == ("B",)
    assert [event.source_id for event in result.events] == ["A"]
    assert correlator.sweep() == []
    assert correlator.stats().evicted == 1


def test_late_event_for_closed_key_is_discarded(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)
    correlator.ingest(_event(42, "A", 100))
    clock.advance(1_000)
    correlator.sweep()

    late = correlator.offer(_event(42, "B", 1_200))

    assert not late.accepted
    assert late.reason == "late_event"
    assert correlator.pending_keys() == []
    assert correlator.stats().late == 1


def test_ingest_evicts_expired_slots_inline(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)
    correlator.ingest(_event(1, "A", 0))
    clock.advance(1_500)

    correlator.ingest(_event(2, "A", 1_500))

    evicted = correlator.drain_evicted()
    assert [result.ordering_key for result in evicted] == [1]
    assert correlator.pending_keys() == [2]


def test_flush_evicts_everything_pending(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=60_000, clock=clock)
    correlator.ingest(_event(1, "A", 0))
    correlator.ingest(_event(2, "B", 0))

    flushed = correlator.flush()

    assert sorted(result.ordering_key for result in flushed) == [1, 2]
    assert all(result.kind is ResultKind.EVICTED_INCOMPLETE for result in flushed)
    assert correlator.pending_keys() == []


def test_unknown_source_is_rejected(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)

    outcome = correlator.offer(_event(1, "C", 0))

    assert not outcome.accepted
    assert outcome.reason == "unknown_source"
    assert correlator.pending_keys() == []
    assert correlator.stats().unknown_source == 1


def test_three_sources_need_all_sides(clock) -> None:
    correlator = Correlator(["A", "B", "C"], retention_ms=1_000, clock=clock)

    assert correlator.ingest(_event(9, "C", 130)) is None
    assert correlator.ingest(_event(9, "A", 100)) is None
    result = correlator.ingest(_event(9, "B", 160))

    assert result is not None
    assert result.winner_source_id == "A"
    assert result.margin_ms == 30


@pytest.mark.parametrize("sources", [[], ["A", "A"]])
def test_invalid_source_sets_are_rejected(sources: list[str]) -> None:
    with pytest.raises(ConfigurationError):
        Correlator(sources, retention_ms=1_000)


def test_decide_winner_needs_two_events() -> None:
    assert decide_winner([_event(1, "A", 10)]) == (None, None)
    assert decide_winner([_event(1, "A", 10), _event(1, "B", 4)]) == ("B", 6)


def test_concurrent_ingestion_from_two_threads() -> None:
    correlator = Correlator(["A", "B"], retention_ms=600_000)
    keys = range(2_000)
    results = []
    results_lock = threading.Lock()

    def feed(source: str) -> None:
        for key in keys:
            result = correlator.ingest(_event(key, source, key))
            if result is not None:
                with results_lock:
                    results.append(result)

    threads = [threading.Thread(target=feed, args=(source,)) for source in ("A", "B")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == len(keys)
    assert sorted(result.ordering_key for result in results) == list(keys)
    assert all(result.winner_source_id is None for result in results)
    assert correlator.pending_keys() == []


def test_closed_key_never_reopens_after_tombstone_expires(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)
    correlator.ingest(_event(5, "A", 100))
    assert correlator.ingest(_event(5, "B", 120)) is not None

    clock.advance(1_000)
    correlator.sweep()
    clock.advance(1_000)
    correlator.sweep()
    stray = correlator.offer(_event(5, "B", 2_100))
    older = correlator.offer(_event(3, "A", 2_100))

    assert not stray.accepted
    assert stray.reason == "late_event"
    assert not older.accepted
    assert correlator.pending_keys() == []
    assert correlator.flush() == []
    assert correlator.stats().late == 2


def test_pending_key_below_watermark_still_completes(clock) -> None:
    correlator = Correlator(["A", "B"], retention_ms=1_000, clock=clock)
    correlator.ingest(_event(9, "A", 0))
    correlator.ingest(_event(9, "B", 10))
    clock.advance(500)
    correlator.ingest(_event(7, "A", 500))
    clock.advance(500)
    correlator.sweep()

    result = correlator.ingest(_event(7, "B", 1_000))

    assert result is not None
    assert result.winner_source_id == "A"
    assert correlator.stats().late == 0
