from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from block_feed_race.core.enums import RunStatus


@dataclass(frozen=True, slots=True)
class RunLedgerEntry:
    run_id: str
    started_at_utc: str
    finished_at_utc: str
    sources: str
    completed: int
    incomplete: int
    ties: int
    status: RunStatus
    export_path: str | None = None
    content_hash: str | None = None


@dataclass(frozen=True, slots=True)
class SourceStatsEntry:
    run_id: str
    source_id: str
    count: int
    avg: float | None
    min: int | None
    max: int | None
    p50: int | None
    p90: int | None
    p95: int | None
    p99: int | None
    filtered: int
    wins: int


class SQLiteRunStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        finally:
            connection.close()

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    started_at_utc TEXT NOT NULL,
                    finished_at_utc TEXT NOT NULL,
                    sources TEXT NOT NULL,
                    completed INTEGER NOT NULL,
                    incomplete INTEGER NOT NULL,
                    ties INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    export_path TEXT,
                    content_hash TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS run_source_stats (
                    run_id TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    avg REAL,
                    min INTEGER,
                    max INTEGER,
                    p50 INTEGER,
                    p90 INTEGER,
                    p95 INTEGER,
                    p99 INTEGER,
                    filtered INTEGER NOT NULL,
                    wins INTEGER NOT NULL,
                    PRIMARY KEY (run_id, source_id)
                )
                """
            )
            conn.commit()

    def record_run(self, entry: RunLedgerEntry, source_stats: list[SourceStatsEntry]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs(
                    run_id, started_at_utc, finished_at_utc, sources,
                    completed, incomplete, ties, status, export_path, content_hash
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    finished_at_utc = excluded.finished_at_utc,
                    completed = excluded.completed,
                    incomplete = excluded.incomplete,
                    ties = excluded.ties,
                    status = excluded.status,
                    export_path = excluded.export_path,
                    content_hash = excluded.content_hash
                """,
                (
                    entry.run_id,
                    entry.started_at_utc,
                    entry.finished_at_utc,
                    entry.sources,
                    entry.completed,
                    entry.incomplete,
                    entry.ties,
                    entry.status.value,
                    entry.export_path,
                    entry.content_hash,
                ),
            )
            conn.executemany(
                """
                INSERT INTO run_source_stats(
                    run_id, source_id, count, avg, min, max, p50, p90, p95, p99, filtered, wins
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, source_id) DO UPDATE SET
                    count = excluded.count,
                    avg = excluded.avg,
                    min = excluded.min,
                    max = excluded.max,
                    p50 = excluded.p50,
                    p90 = excluded.p90,
                    p95 = excluded.p95,
                    p99 = excluded.p99,
                    filtered = excluded.filtered,
                    wins = excluded.wins
                """,
                [
                    (
                        stats.run_id,
                        stats.source_id,
                        stats.count,
                        stats.avg,
                        stats.min,
                        stats.max,
                        stats.p50,
                        stats.p90,
                        stats.p95,
                        stats.p99,
                        stats.filtered,
                        stats.wins,
                    )
                    for stats in source_stats
                ],
            )
            conn.commit()

    def latest_runs(self, limit: int = 10) -> list[RunLedgerEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, started_at_utc, finished_at_utc, sources, completed,
                       incomplete, ties, status, export_path, content_hash
                FROM runs
                ORDER BY started_at_utc DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            RunLedgerEntry(
                run_id=row["run_id"],
                started_at_utc=row["started_at_utc"],
                finished_at_utc=row["finished_at_utc"],
                sources=row["sources"],
                completed=int(row["completed"]),
                incomplete=int(row["incomplete"]),
                ties=int(row["ties"]),
                status=RunStatus(row["status"]),
                export_path=row["export_path"],
                content_hash=row["content_hash"],
            )
            for row in rows
        ]

    def source_stats(self, run_id: str) -> list[SourceStatsEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, source_id, count, avg, min, max, p50, p90, p95, p99, filtered, wins
                FROM run_source_stats
                WHERE run_id = ?
                ORDER BY source_id
                """,
                (run_id,),
            ).fetchall()
        return [SourceStatsEntry(**dict(row)) for row in rows]
