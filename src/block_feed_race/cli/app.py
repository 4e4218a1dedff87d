from __future__ import annotations

import asyncio
import uuid

import httpx
import typer
from pydantic import ValidationError
from rich.console import Console

from block_feed_race.core.config import ConfigurationError, Settings
from block_feed_race.core.enums import QualityLabel, RunStatus
from block_feed_race.core.logging import configure_logging
from block_feed_race.engine.hub import MeasurementEngine
from block_feed_race.engine.race import RaceOutcome
from block_feed_race.engine.runner import RaceRunner, RunSummary
from block_feed_race.sources.base import ArrivalSource
from block_feed_race.sources.providers import load_provider_config
from block_feed_race.sources.rpc import RPCPollingSource, SolanaRPCClient
from block_feed_race.sources.websocket import BlockSubscriptionSource
from block_feed_race.state.store import RunLedgerEntry, SourceStatsEntry, SQLiteRunStore
from block_feed_race.validation.dq import DQValidator
from block_feed_race.writer.atomic import AtomicParquetWriter

app = typer.Typer(help="Block feed latency race CLI")
console = Console()

RPC_SOURCE = "rpc"
WS_SOURCE = "websocket"

_QUALITY_STYLE = {
    QualityLabel.EXCELLENT: "green",
    QualityLabel.GOOD: "yellow",
    QualityLabel.FAIR: "dark_orange",
    QualityLabel.SLOW: "red",
    QualityLabel.UNKNOWN: "dim",
}


def _load_settings() -> Settings:
    try:
        settings = Settings()
    except (ValidationError, ConfigurationError) as exc:
        raise typer.BadParameter(str(exc)) from exc
    configure_logging(settings.log_level)
    return settings


def _with_api_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    return str(httpx.URL(url).copy_merge_params({"api-key": api_key}))


def _endpoints(settings: Settings, rpc_url: str | None, ws_url: str | None) -> tuple[str, str]:
    resolved_rpc = settings.rpc_url
    resolved_ws = settings.ws_url
    if settings.provider_config is not None:
        try:
            provider = load_provider_config(settings.provider_config).select()
        except ConfigurationError as exc:
            raise typer.BadParameter(str(exc)) from exc
        console.print(f"RPC Provider: {provider.name} ({provider.provider})")
        resolved_rpc = provider.url
        resolved_ws = provider.websocket_url()
    resolved_rpc = rpc_url or resolved_rpc
    resolved_ws = ws_url or resolved_ws
    return _with_api_key(resolved_rpc, settings.api_key), _with_api_key(resolved_ws, settings.api_key)


def _build_engine(settings: Settings, sources: list[str]) -> MeasurementEngine:
    try:
        return MeasurementEngine(settings.engine_config(sources))
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _format_ms(value: int | None) -> str:
    return "-" if value is None else f"{value}ms"


def _print_outcome(outcome: RaceOutcome, sources: list[str]) -> None:
    if outcome.incomplete:
        winner = "incomplete"
    elif outcome.winner_source_id is None:
        winner = "tie"
    else:
        winner = outcome.winner_source_id
    cells = []
    for source_id in sources:
        side = outcome.side(source_id)
        cells.append(f"{_format_ms(side.propagation_latency_ms) if side else 'missing':<10}")
    style = _QUALITY_STYLE[outcome.overall]
    console.print(
        f"{outcome.ordering_key:<12} | {winner:<12} | {' | '.join(cells)} | "
        f"{_format_ms(outcome.margin_ms):<8} | [{style}]{outcome.overall.value}[/{style}]"
    )


def _print_summary(summary: RunSummary) -> None:
    console.print()
    console.print(f"[bold]Run summary[/bold] ({summary.duration_seconds:.1f}s)")
    tally = summary.tally
    console.print(
        f"completed={tally.completed}, ties={tally.ties}, incomplete={tally.incomplete}, "
        f"late={summary.diagnostics.correlator.late}, duplicates={summary.diagnostics.correlator.duplicates}"
    )
    for source_id in summary.sources:
        stats = summary.stats[source_id]
        wins = tally.wins.get(source_id, 0)
        lead = tally.average_lead(source_id)
        lead_text = f", avg_lead={lead:.1f}ms" if lead is not None else ""
        rate = tally.win_rate(source_id)
        console.print(f"[bold]{source_id}[/bold]: wins={wins} ({rate:.1%} of {tally.decided} decided){lead_text}")
        if stats.count == 0:
            console.print(f"  no plausible samples (filtered={stats.filtered})")
            continue
        console.print(
            f"  count={stats.count}, avg={stats.avg:.1f}ms, min={stats.min}ms, max={stats.max}ms, "
            f"p50={stats.p50}ms, p90={stats.p90}ms, p95={stats.p95}ms, p99={stats.p99}ms, "
            f"filtered={stats.filtered}"
        )
        distribution = ", ".join(
            f"{label}={count} ({stats.bucket_share(label):.1%})" for label, count in stats.buckets.items()
        )
        console.print(f"  {distribution}")
    for source_id, error in summary.source_errors.items():
        console.print(f"[red]{source_id} failed:[/red] {error}")


def _persist(settings: Settings, engine: MeasurementEngine, summary: RunSummary, export: bool) -> str:
    run_id = f"{summary.started_at:%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:6]}"
    export_path: str | None = None
    content_hash: str | None = None
    if export:
        writer = AtomicParquetWriter(root_dir=settings.root_dir, validator=DQValidator())
        run_export = writer.export_run(run_id, engine.history(), engine.samples())
        export_path = str(run_export.results_path.parent)
        content_hash = run_export.content_hash

    store = SQLiteRunStore(settings.state_db)
    store.initialize()
    store.record_run(
        RunLedgerEntry(
            run_id=run_id,
            started_at_utc=summary.started_at.isoformat(),
            finished_at_utc=summary.finished_at.isoformat(),
            sources=",".join(summary.sources),
            completed=summary.tally.completed,
            incomplete=summary.tally.incomplete,
            ties=summary.tally.ties,
            status=RunStatus.FAILED if summary.source_errors else RunStatus.COMPLETED,
            export_path=export_path,
            content_hash=content_hash,
        ),
        [
            SourceStatsEntry(
                run_id=run_id,
                source_id=source_id,
                count=stats.count,
                avg=stats.avg,
                min=stats.min,
                max=stats.max,
                p50=stats.p50,
                p90=stats.p90,
                p95=stats.p95,
                p99=stats.p99,
                filtered=stats.filtered,
                wins=summary.tally.wins.get(source_id, 0),
            )
            for source_id, stats in summary.stats.items()
        ],
    )
    return run_id


async def _run(
    settings: Settings,
    engine: MeasurementEngine,
    sources: list[ArrivalSource],
    duration_seconds: int,
    show_outcomes: bool,
) -> RunSummary:
    source_ids = [source.source_id for source in sources]
    runner = RaceRunner(
        engine,
        sources,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        on_outcome=(lambda outcome: _print_outcome(outcome, source_ids)) if show_outcomes else None,
    )
    return await runner.run(duration_seconds)


@app.command("init-state")
def init_state() -> None:
    settings = _load_settings()
    store = SQLiteRunStore(settings.state_db)
    store.initialize()
    console.print(f"State initialized at [bold]{settings.state_db}[/bold]")


@app.command("race")
def race(
    duration: int | None = typer.Option(default=None, min=1, help="Run duration in seconds"),
    rpc_url: str | None = typer.Option(default=None, help="JSON-RPC HTTP endpoint (poll feed)"),
    ws_url: str | None = typer.Option(default=None, help="JSON-RPC websocket endpoint (push feed)"),
    subscription: str = typer.Option(default="block", help="Websocket subscription: block or slot"),
    export: bool = typer.Option(default=True, help="Write results and samples to Parquet"),
) -> None:
    settings = _load_settings()
    duration_seconds = duration or settings.duration_seconds
    resolved_rpc, resolved_ws = _endpoints(settings, rpc_url, ws_url)
    engine = _build_engine(settings, [WS_SOURCE, RPC_SOURCE])

    async def _race() -> RunSummary:
        client = SolanaRPCClient(resolved_rpc, timeout_seconds=settings.request_timeout_seconds)
        try:
            sources: list[ArrivalSource] = [
                BlockSubscriptionSource(resolved_ws, source_id=WS_SOURCE, subscription=subscription),
                RPCPollingSource(client, source_id=RPC_SOURCE, poll_interval_ms=settings.poll_interval_ms),
            ]
            return await _run(settings, engine, sources, duration_seconds, show_outcomes=True)
        finally:
            await client.close()

    console.print(f"Block detection race: {WS_SOURCE} (push) vs {RPC_SOURCE} (poll), {duration_seconds}s")
    console.print(
        f"{'Slot':<12} | {'Winner':<12} | {WS_SOURCE:<10} | {RPC_SOURCE:<10} | {'Margin':<8} | Overall"
    )
    console.print("-" * 75)
    summary = asyncio.run(_race())
    _print_summary(summary)
    run_id = _persist(settings, engine, summary, export)
    console.print(f"Run recorded as [bold]{run_id}[/bold]")


@app.command("latency")
def latency(
    method: str = typer.Option(default="rpc", help="Feed to measure: rpc or websocket"),
    duration: int | None = typer.Option(default=None, min=1, help="Run duration in seconds"),
    rpc_url: str | None = typer.Option(default=None),
    ws_url: str | None = typer.Option(default=None),
    export: bool = typer.Option(default=False, help="Write results and samples to Parquet"),
) -> None:
    settings = _load_settings()
    if method not in {RPC_SOURCE, WS_SOURCE}:
        raise typer.BadParameter(f"method must be '{RPC_SOURCE}' or '{WS_SOURCE}'")
    duration_seconds = duration or settings.duration_seconds
    resolved_rpc, resolved_ws = _endpoints(settings, rpc_url, ws_url)
    engine = _build_engine(settings, [method])

    async def _measure() -> RunSummary:
        if method == WS_SOURCE:
            source = BlockSubscriptionSource(resolved_ws, source_id=WS_SOURCE)
            return await _run(settings, engine, [source], duration_seconds, show_outcomes=False)
        client = SolanaRPCClient(resolved_rpc, timeout_seconds=settings.request_timeout_seconds)
        try:
            poller = RPCPollingSource(client, source_id=RPC_SOURCE, poll_interval_ms=settings.poll_interval_ms)
            return await _run(settings, engine, [poller], duration_seconds, show_outcomes=False)
        finally:
            await client.close()

    console.print(f"Latency measurement: {method}, {duration_seconds}s")
    summary = asyncio.run(_measure())
    _print_summary(summary)
    run_id = _persist(settings, engine, summary, export)
    console.print(f"Run recorded as [bold]{run_id}[/bold]")


@app.command("show-runs")
def show_runs(limit: int = typer.Option(default=10, min=1, max=100)) -> None:
    settings = _load_settings()
    store = SQLiteRunStore(settings.state_db)
    store.initialize()
    runs = store.latest_runs(limit)
    if not runs:
        console.print(f"No runs recorded in {settings.state_db}")
        return
    for run in runs:
        console.print(
            f"[bold]{run.run_id}[/bold] {run.status.value} sources={run.sources} "
            f"completed={run.completed} ties={run.ties} incomplete={run.incomplete}"
        )
        for stats in store.source_stats(run.run_id):
            avg = "-" if stats.avg is None else f"{stats.avg:.1f}ms"
            console.print(
                f"  {stats.source_id}: count={stats.count} avg={avg} p50={_format_ms(stats.p50)} "
                f"p95={_format_ms(stats.p95)} wins={stats.wins} filtered={stats.filtered}"
            )
        if run.export_path:
            console.print(f"  export: {run.export_path}")


if __name__ == "__main__":
    app()
