import pytest

from block_feed_race.core.events import LatencySample
from block_feed_race.engine.stats import LatencyStatsAggregator, percentile


def _sample(value: int, source: str = "A", key: int = 0) -> LatencySample:
    return LatencySample(value_ms=value, source_id=source, ordering_key=key, observed_at=0)


def _aggregator(**kwargs) -> LatencyStatsAggregator:
    kwargs.setdefault("max_plausible_ms", 60_000)
    return LatencyStatsAggregator(**kwargs)


def test_snapshot_summary_over_small_vector() -> None:
    aggregator = _aggregator()
    for key, value in enumerate([100, 50, 300, 50]):
        aggregator.record(_sample(value, key=key))

    stats = aggregator.snapshot("A")

    assert stats.count == 4
    assert stats.min == 50
    assert stats.max == 300
    assert stats.avg == 125.0
    # sorted [50, 50, 100, 300]: p50 -> index floor(0.5 * 3) = 1
    assert stats.p50 == 50
    assert stats.p90 == 100
    assert stats.p95 == 100
    assert stats.p99 == 100


def test_implausible_samples_are_filtered_and_counted() -> None:
    aggregator = _aggregator()

    assert not aggregator.record(_sample(-5)).accepted
    assert not aggregator.record(_sample(10_000_000)).accepted
    assert not aggregator.record(_sample(60_000)).accepted
    assert aggregator.record(_sample(0)).accepted

    stats = aggregator.snapshot("A")
    assert stats.count == 1
    assert stats.filtered == 3
    assert aggregator.filtered_count("A") == 3


def test_bucket_distribution_uses_lower_inclusive_bounds() -> None:
    aggregator = _aggregator()
    for value in (100, 500, 999, 1_000, 2_500):
        aggregator.record(_sample(value))

    stats = aggregator.snapshot("A")

    assert stats.buckets == {"excellent": 1, "good": 2, "fair": 1, "slow": 1}
    assert stats.bucket_share("good") == pytest.approx(0.4)


def test_running_average_reported_every_k_samples() -> None:
    aggregator = _aggregator(progress_every=2)

    first = aggregator.record(_sample(100))
    second = aggregator.record(_sample(300))

    assert first.running_average is None
    assert second.running_average == 200.0
    assert second.running_count == 2
    assert aggregator.running_average("A") == 200.0


def test_snapshots_are_deterministic() -> None:
    values = [820, 40, 1_900, 40, 3_300, 760, 12]
    left, right = _aggregator(), _aggregator()
    for value in values:
        left.record(_sample(value))
    for value in reversed(values):
        right.record(_sample(value))

    assert left.snapshot("A") == right.snapshot("A")
    assert left.snapshot("A") == left.snapshot("A")


def test_unknown_source_snapshot_is_empty() -> None:
    stats = _aggregator().snapshot("missing")

    assert stats.count == 0
    assert stats.avg is None
    assert stats.p50 is None
    assert stats.buckets == {"excellent": 0, "good": 0, "fair": 0, "slow": 0}
    assert stats.bucket_share("excellent") == 0.0


def test_combined_snapshot_spans_sources() -> None:
    aggregator = _aggregator()
    aggregator.record(_sample(10, source="A"))
    aggregator.record(_sample(30, source="B"))

    combined = aggregator.snapshot()

    assert combined.count == 2
    assert combined.avg == 20.0
    assert set(aggregator.snapshot_all()) == {"A", "B"}


def test_percentile_edges() -> None:
    assert percentile([7], 0.99) == 7
    assert percentile([1, 2, 3, 4], 1.0) == 4
    assert percentile([1, 2, 3, 4], 0.0) == 1
    with pytest.raises(ValueError):
        percentile([], 0.5)
    with pytest.raises(ValueError):
        percentile([1], 1.5)


def test_custom_bucket_labels_must_match_thresholds() -> None:
    with pytest.raises(ValueError):
        _aggregator(bucket_thresholds=(100, 200), bucket_labels=("fast", "slow"))
