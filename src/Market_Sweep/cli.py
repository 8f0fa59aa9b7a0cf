"""CLI entry point for Market Sweep.

Provides the ``market-sweep`` command with subcommands for running scan jobs,
inspecting their status and run history, resetting resume state, managing
the tracked-ticker universe and serving the admin API.

This is the ONLY module where console output is allowed. All other modules
use ``logging``. Async internals are bridged to typer's synchronous interface
via ``asyncio.run()``.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from Market_Sweep.config import Settings
from Market_Sweep.logging_config import configure_logging
from Market_Sweep.models.enums import JobType, RunStatus
from Market_Sweep.models.market_data import normalize_tickers
from Market_Sweep.models.scan import RunSummary
from Market_Sweep.services.scan_runner import Runtime, open_runtime

# ---------------------------------------------------------------------------
# Typer app and sub-apps
# ---------------------------------------------------------------------------

app = typer.Typer(name="market-sweep", help="Resumable market-data scan jobs")
tickers_app = typer.Typer(help="Manage the tracked-ticker universe")
app.add_typer(tickers_app, name="tickers")

# Rich console for formatted output
console = Console()

_STATUS_STYLES: dict[str, str] = {
    RunStatus.COMPLETED: "green",
    RunStatus.COMPLETED_WITH_ERRORS: "yellow",
    RunStatus.STOPPED: "yellow",
    RunStatus.RUNNING: "cyan",
    RunStatus.STOPPING: "cyan",
    RunStatus.RUNNING_RETRY: "cyan",
    RunStatus.FAILED: "red",
    RunStatus.DISABLED: "dim",
    RunStatus.IDLE: "dim",
}

PROGRESS_REFRESH_SECONDS: float = 0.5


def _styled(status: str | None) -> str:
    if status is None:
        return "[dim]-[/dim]"
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _parse_job(value: str) -> JobType:
    normalized = value.strip().lower().replace("-", "_")
    try:
        return JobType(normalized)
    except ValueError:
        valid = ", ".join(str(j) for j in JobType)
        raise typer.BadParameter(f"unknown job '{value}' (expected one of: {valid})") from None


# ---------------------------------------------------------------------------
# Pause via Ctrl+C
# ---------------------------------------------------------------------------

_active_runtime: Runtime | None = None
_active_job: JobType | None = None


def _handle_sigint(signum: int, frame: object) -> None:
    """Handle SIGINT (Ctrl+C) by requesting a pause of the active run.

    Does not call ``sys.exit()``; the driver stops admitting tickers, saves
    a resume snapshot and returns ``stopped``.
    """
    if _active_runtime is None or _active_job is None:
        raise KeyboardInterrupt
    if _active_runtime.runner.request_pause(_active_job):
        console.print("\n[yellow]Pause requested. Finishing in-flight tickers...[/yellow]")


# ---------------------------------------------------------------------------
# run command
# ---------------------------------------------------------------------------


@app.command()
def run(
    job: Annotated[str, typer.Argument(help="Job to run: fetch_daily, fetch_weekly, ...")],
    fresh: Annotated[
        bool, typer.Option("--fresh", help="Ignore any resume state and start over")
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Suppress info logging")] = False,
) -> None:
    """Run one scan job in the foreground. Ctrl+C pauses it for a later resume."""
    configure_logging(verbose=verbose, quiet=quiet)
    job_type = _parse_job(job)

    original_handler = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, _handle_sigint)
    try:
        summary = asyncio.run(_run_async(job_type, force_fresh=fresh))
    finally:
        signal.signal(signal.SIGINT, original_handler)

    _render_summary(summary)
    if summary.status == RunStatus.FAILED:
        raise typer.Exit(code=1)


async def _run_async(job_type: JobType, *, force_fresh: bool) -> RunSummary:
    global _active_runtime, _active_job  # noqa: PLW0603

    async with open_runtime(Settings.from_env()) as runtime:
        _active_runtime, _active_job = runtime, job_type
        state = runtime.registry.get(job_type)
        try:
            with Progress(
                SpinnerColumn(spinner_name="line"),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                task_id = progress.add_task(f"Starting {job_type}...", total=None)
                run_task = asyncio.create_task(runtime.runner.run(job_type, force_fresh=force_fresh))
                while not run_task.done():
                    report = state.get_status()
                    if report.running:
                        progress.update(
                            task_id,
                            description=(
                                f"{job_type} {report.status}: {report.processed_tickers}/"
                                f"{report.total_tickers} processed, {report.error_tickers} errors"
                            ),
                        )
                    await asyncio.wait({run_task}, timeout=PROGRESS_REFRESH_SECONDS)
                return run_task.result()
        finally:
            _active_runtime, _active_job = None, None


def _render_summary(summary: RunSummary) -> None:
    console.print(f"\n[bold]{summary.job_type}[/bold]: {_styled(summary.status)}")
    if summary.run_id:
        console.print(f"Run:       {summary.run_id}")
    if summary.resumed:
        console.print("[dim]Resumed from a saved snapshot[/dim]")
    console.print(f"Processed: {summary.processed_tickers}/{summary.total_tickers}")
    console.print(f"Detected:  {summary.detected_tickers}")
    console.print(f"Errors:    {summary.error_tickers}")
    if summary.retry_recovered:
        console.print(f"Recovered on retry: {', '.join(summary.retry_recovered)}")
    if summary.failed_tickers:
        shown = ", ".join(summary.failed_tickers[:20])
        more = len(summary.failed_tickers) - 20
        console.print(f"[red]Failed:[/red] {shown}" + (f" (+{more} more)" if more > 0 else ""))
    if summary.status == RunStatus.STOPPED:
        console.print("[yellow]Run the same command again to resume.[/yellow]")
    if summary.error:
        console.print(f"[red]{summary.error}[/red]")


# ---------------------------------------------------------------------------
# status / history / reset
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show every job's status and whether it can resume."""
    configure_logging(quiet=True)
    asyncio.run(_status_async())


async def _status_async() -> None:
    async with open_runtime(Settings.from_env()) as runtime:
        table = Table(title="Scan Jobs")
        table.add_column("Job", style="bold", width=14)
        table.add_column("Status", width=12)
        table.add_column("Last outcome", width=22)
        table.add_column("Resumable", width=10)
        table.add_column("Remaining", justify="right", width=10)
        table.add_column("Published", width=12)

        for state in runtime.registry.all():
            report = state.get_status()
            snapshot = state.resume_state
            remaining = str(len(snapshot.remaining_tickers)) if snapshot is not None else "-"
            extras = report.model_extra or {}
            table.add_row(
                str(report.job_type),
                _styled(report.status),
                _styled(report.last_outcome),
                "[green]yes[/green]" if report.can_resume else "no",
                remaining,
                str(extras.get("last_published_date") or "-"),
            )
        console.print(table)


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of runs to show")] = 20,
) -> None:
    """Show the most recent runs and their metrics."""
    configure_logging(quiet=True)
    asyncio.run(_history_async(limit=limit))


async def _history_async(*, limit: int) -> None:
    async with open_runtime(Settings.from_env()) as runtime:
        snapshots = await runtime.repository.list_run_metrics(limit=limit)
        if not snapshots:
            console.print("[yellow]No runs recorded yet.[/yellow]")
            return

        table = Table(title="Run History")
        table.add_column("Run", style="bold", width=34)
        table.add_column("Status", width=22)
        table.add_column("Processed", justify="right", width=10)
        table.add_column("Errors", justify="right", width=7)
        table.add_column("API calls", justify="right", width=9)
        table.add_column("p95 ms", justify="right", width=8)
        table.add_column("Duration", justify="right", width=9)
        for snap in snapshots:
            table.add_row(
                snap.run_id,
                _styled(snap.status),
                f"{snap.tickers.processed}/{snap.tickers.total}",
                str(snap.tickers.errors),
                str(snap.api.calls),
                f"{snap.api.latency.p95_ms:.0f}",
                f"{snap.duration_seconds:.1f}s",
            )
        console.print(table)


@app.command()
def reset(
    job: Annotated[str, typer.Argument(help="Job whose resume state to discard")],
) -> None:
    """Discard a job's resume state so its next run starts fresh."""
    configure_logging(quiet=True)
    job_type = _parse_job(job)
    asyncio.run(_reset_async(job_type))
    console.print(f"[green]Resume state for {job_type} cleared.[/green]")


async def _reset_async(job_type: JobType) -> None:
    async with open_runtime(Settings.from_env()) as runtime:
        await runtime.registry.reset_resume(job_type)


# ---------------------------------------------------------------------------
# tickers subcommands
# ---------------------------------------------------------------------------


@tickers_app.command("add")
def tickers_add(
    symbols: Annotated[list[str], typer.Argument(help="Ticker symbols to track")],
) -> None:
    """Add tickers to the universe (or reactivate them)."""
    configure_logging(quiet=True)
    valid = normalize_tickers(symbols)
    rejected = [s for s in symbols if s.strip().upper() not in set(valid)]
    if rejected:
        console.print(f"[yellow]Skipping invalid symbols: {', '.join(rejected)}[/yellow]")
    if not valid:
        raise typer.Exit(code=1)
    added = asyncio.run(_tickers_add_async(valid))
    console.print(f"[green]Tracking {added} ticker(s).[/green]")


async def _tickers_add_async(symbols: list[str]) -> int:
    async with open_runtime(Settings.from_env()) as runtime:
        return await runtime.repository.add_tickers(symbols)


@tickers_app.command("remove")
def tickers_remove(
    symbol: Annotated[str, typer.Argument(help="Ticker symbol to stop tracking")],
) -> None:
    """Stop tracking a ticker. Its stored bars are kept."""
    configure_logging(quiet=True)
    removed = asyncio.run(_tickers_remove_async(symbol.strip().upper()))
    if not removed:
        console.print(f"[yellow]{symbol.upper()} is not tracked.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]{symbol.upper()} removed.[/green]")


async def _tickers_remove_async(symbol: str) -> bool:
    async with open_runtime(Settings.from_env()) as runtime:
        return await runtime.repository.deactivate_ticker(symbol)


@tickers_app.command("list")
def tickers_list(
    show_all: Annotated[bool, typer.Option("--all", help="Include inactive tickers")] = False,
) -> None:
    """List tracked tickers."""
    configure_logging(quiet=True)
    asyncio.run(_tickers_list_async(include_inactive=show_all))


async def _tickers_list_async(*, include_inactive: bool) -> None:
    async with open_runtime(Settings.from_env()) as runtime:
        tracked = await runtime.repository.list_tracked_tickers(include_inactive=include_inactive)
        if not tracked:
            console.print("[yellow]No tickers tracked.[/yellow]")
            return
        table = Table(title="Tracked Tickers")
        table.add_column("Symbol", style="bold", width=8)
        table.add_column("Name", width=30)
        table.add_column("Active", width=7)
        table.add_column("Added", width=12)
        for ticker in tracked:
            table.add_row(
                ticker.symbol,
                ticker.name,
                "yes" if ticker.active else "no",
                ticker.added_at.date().isoformat(),
            )
        console.print(table)
        console.print(f"\n[dim]Total: {len(tracked)} tickers[/dim]")


# ---------------------------------------------------------------------------
# serve command
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: Annotated[str, typer.Option(help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="Bind port")] = 8000,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """Serve the admin API (and the schedulers) with uvicorn."""
    import uvicorn

    configure_logging(verbose=verbose)
    uvicorn.run(
        "Market_Sweep.web.app:create_app",
        factory=True,
        host=host,
        port=port,
        log_level="debug" if verbose else "info",
    )


if __name__ == "__main__":
    app()
