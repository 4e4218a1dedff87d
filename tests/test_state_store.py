from pathlib import Path

from block_feed_race.core.enums import RunStatus
from block_feed_race.state.store import RunLedgerEntry, SourceStatsEntry, SQLiteRunStore


def _entry(run_id: str, started: str, status: RunStatus = RunStatus.COMPLETED) -> RunLedgerEntry:
    return RunLedgerEntry(
        run_id=run_id,
        started_at_utc=started,
        finished_at_utc=started,
        sources="websocket,rpc",
        completed=10,
        incomplete=1,
        ties=2,
        status=status,
    )


def _stats(run_id: str, source_id: str, wins: int) -> SourceStatsEntry:
    return SourceStatsEntry(
        run_id=run_id,
        source_id=source_id,
        count=10,
        avg=512.5,
        min=100,
        max=1_900,
        p50=450,
        p90=1_200,
        p95=1_500,
        p99=1_900,
        filtered=1,
        wins=wins,
    )


def test_run_roundtrip(tmp_path: Path) -> None:
    store = SQLiteRunStore(tmp_path / "state.sqlite")
    store.initialize()

    store.record_run(
        _entry("run-1", "2026-01-15T10:00:00+00:00"),
        [_stats("run-1", "websocket", 6), _stats("run-1", "rpc", 2)],
    )

    runs = store.latest_runs()
    assert len(runs) == 1
    assert runs[0].status == RunStatus.COMPLETED
    assert runs[0].ties == 2
    stats = store.source_stats("run-1")
    assert [entry.source_id for entry in stats] == ["rpc", "websocket"]
    assert stats[1].wins == 6
    assert stats[1].avg == 512.5


def test_record_run_upserts_and_orders_latest_first(tmp_path: Path) -> None:
    store = SQLiteRunStore(tmp_path / "nested" / "state.sqlite")
    store.initialize()
    store.record_run(_entry("run-1", "2026-01-15T10:00:00+00:00"), [_stats("run-1", "rpc", 1)])
    store.record_run(_entry("run-2", "2026-01-15T11:00:00+00:00"), [])
    store.record_run(
        _entry("run-1", "2026-01-15T10:00:00+00:00", status=RunStatus.FAILED),
        [_stats("run-1", "rpc", 4)],
    )

    runs = store.latest_runs(limit=5)

    assert [run.run_id for run in runs] == ["run-2", "run-1"]
    assert runs[1].status == RunStatus.FAILED
    assert [entry.wins for entry in store.source_stats("run-1")] == [4]
