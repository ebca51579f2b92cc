#!/usr/bin/env python
"""
Lienflow CLI.

    lienflow scrape 01/01/2026 01/31/2026        search and deliver records
    lienflow enqueue 01/01/2026 01/31/2026       search and queue filings
    lienflow work [--forever]                    drain the queue
    lienflow status 42 | jobs | stats            inspect the queue
    lienflow serve --port 8000                   HTTP trigger
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Annotated, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from lienflow.core.config import VERSION, get_settings
from lienflow.database.models import JobStatus
from lienflow.utils.logging import configure_logging

T = TypeVar("T")

app = typer.Typer(
    name="lienflow",
    help="Lienflow - lien filing discovery and extraction",
    add_completion=False,
)

console = Console()

DateStart = Annotated[str, typer.Argument(help="Window start (MM/DD/YYYY)")]
DateEnd = Annotated[str, typer.Argument(help="Window end (MM/DD/YYYY)")]
Site = Annotated[str, typer.Option("--site", help="Filing source key")]
MaxRecords = Annotated[int | None, typer.Option("--max-records", "-n", help="Record budget")]

STATUS_STYLE = {
    JobStatus.QUEUED: "yellow",
    JobStatus.PROCESSING: "blue",
    JobStatus.DONE: "green",
    JobStatus.FAILED: "red",
    JobStatus.ABANDONED: "magenta",
}


def _styled(status: JobStatus) -> str:
    style = STATUS_STYLE.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _table(title: str, columns: Iterable[str], rows: Iterable[Iterable[str]]) -> Table:
    table = Table(title=title)
    for index, column in enumerate(columns):
        table.add_column(column, style="cyan" if index == 0 else "white")
    for row in rows:
        table.add_row(*row)
    return table


def _job_store():
    from lienflow.database.connection import get_session_factory
    from lienflow.database.repository import JobStore

    return JobStore(get_session_factory(), lease_seconds=get_settings().worker_lease_seconds)


def _with_db(action: Callable[[], Awaitable[T]]) -> T:
    """Run ``action`` between init_db and close_db on a fresh event loop."""
    from lienflow.database.connection import close_db, init_db

    async def _run() -> T:
        await init_db()
        try:
            return await action()
        finally:
            await close_db()

    configure_logging()
    return asyncio.run(_run())


def _run_scrape(
    date_start: str,
    date_end: str,
    site: str,
    max_records: int | None,
    mode: str,
    cursor: tuple[int, int] | None = None,
    dry_run: bool = False,
) -> None:
    from lienflow.models.jobs import ScanMode, ScrapeRequest
    from lienflow.models.records import ExtractionCursor
    from lienflow.services.sinks import MemorySink, build_sink
    from lienflow.services.trigger import ScrapeService
    from lienflow.utils.exceptions import LienflowError

    settings = get_settings()
    scan_mode = ScanMode(mode)
    try:
        request = ScrapeRequest(
            site=site,
            date_start=date_start,
            date_end=date_end,
            max_records=max_records,
            mode=scan_mode,
            resume_cursor=ExtractionCursor(page=cursor[0], row_index=cursor[1]) if cursor else None,
        )
    except ValueError as e:
        console.print(f"[red]Invalid request:[/red] {e}")
        raise typer.Exit(1)

    sink = MemorySink() if dry_run else None

    async def _scrape():
        nonlocal sink
        if sink is None and scan_mode is ScanMode.SYNC:
            sink = build_sink(settings)
        try:
            return await ScrapeService(_job_store(), sink, settings).scrape(request)
        finally:
            if sink is not None:
                await sink.close()

    console.print(f"[blue]{mode.title()} scan:[/blue] {site} {date_start} - {date_end}")
    try:
        result = _with_db(_scrape)
    except LienflowError as e:
        console.print(f"[red]✗ Scan failed:[/red] {e.message}")
        console.print_json(data=e.to_dict())
        raise typer.Exit(1)

    console.print_json(data=result.model_dump(mode="json"))
    if isinstance(sink, MemorySink):
        for record in sink.records:
            console.print(
                f"[dim]{record.file_number}[/dim] {record.debtor_name} "
                f"{record.filing_date} {record.error or ''}"
            )
    console.print("[green]✓ Scan finished[/green]")


@app.command()
def scrape(
    date_start: DateStart,
    date_end: DateEnd,
    site: Site = "ca_sos",
    max_records: MaxRecords = None,
    page: Annotated[int, typer.Option("--page", help="Resume at this results page")] = 1,
    row: Annotated[int, typer.Option("--row", help="Resume at this row of the page")] = 0,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Print records instead of delivering them")
    ] = False,
) -> None:
    """
    Search a date window and deliver each record to the sink.

    To resume a failed run, scrape the window_start/window_end it printed with
    --page/--row set to its cursor; rows collected before the failure were
    already delivered. Then scrape the rest of the range up to request_end.
    """
    cursor = None if (page, row) == (1, 0) else (page, row)
    _run_scrape(date_start, date_end, site, max_records, "sync", cursor, dry_run)


@app.command()
def enqueue(
    date_start: DateStart,
    date_end: DateEnd,
    site: Site = "ca_sos",
    max_records: MaxRecords = None,
) -> None:
    """Search a date window and store each filing as a queue job."""
    _run_scrape(date_start, date_end, site, max_records, "queued")


@app.command()
def work(
    forever: Annotated[
        bool, typer.Option("--forever", help="Keep polling once the queue is empty")
    ] = False,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Keep records in memory instead of delivering")
    ] = False,
) -> None:
    """Claim queued filings and extract them one by one."""
    from lienflow.extractors.driver import PlaywrightDriver
    from lienflow.services.sinks import MemorySink, build_sink
    from lienflow.services.worker import WorkerLoop
    from lienflow.utils.throttle import RateLimiter

    settings = get_settings()

    async def _work():
        sink = MemorySink() if dry_run else build_sink(settings)
        limiter = RateLimiter(
            settings.rate_limit_min_interval_ms, settings.rate_limit_max_concurrent
        )
        try:
            async with PlaywrightDriver(settings) as driver:
                worker = WorkerLoop.from_settings(settings, _job_store(), driver, sink, limiter)
                return await worker.run(stop_when_drained=not forever)
        finally:
            await sink.close()

    try:
        totals = _with_db(_work)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)

    console.print(
        _table(
            "Worker Run",
            ["Outcome", "Jobs"],
            [
                ["claimed", str(totals.claimed)],
                [_styled(JobStatus.DONE), str(totals.done)],
                [_styled(JobStatus.FAILED), str(totals.failed)],
                [_styled(JobStatus.ABANDONED), str(totals.abandoned)],
            ],
        )
    )


@app.command()
def status(job_id: Annotated[int, typer.Argument(help="Queue job id")]) -> None:
    """Show a single queue job."""
    from lienflow.utils.exceptions import JobNotFoundError

    try:
        job = _with_db(lambda: _job_store().get(job_id))
    except JobNotFoundError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    rows = [
        ["File number", job.filing_number],
        ["Filing date", job.filing_date],
        ["Site", job.site],
        ["Status", _styled(job.status)],
        ["Attempts", str(job.attempts)],
        ["Locked until", str(job.locked_until or "-")],
        ["Created", str(job.created_at)],
    ]
    if job.last_error:
        rows.append(["Error", f"[red]{job.last_error}[/red]"])
    console.print(_table(f"Job {job.id}", ["Field", "Value"], rows))


@app.command()
def jobs(
    status_filter: Annotated[
        str | None,
        typer.Option("--status", "-s", help="queued, processing, done, failed or abandoned"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Jobs to show")] = 20,
) -> None:
    """List queue jobs, newest first."""
    wanted = None
    if status_filter:
        try:
            wanted = JobStatus(status_filter.lower())
        except ValueError:
            console.print(f"[red]Invalid status: {status_filter}[/red]")
            console.print(f"Valid statuses: {', '.join(s.value for s in JobStatus)}")
            raise typer.Exit(1)

    found = _with_db(lambda: _job_store().list_jobs(status=wanted, limit=limit))
    if not found:
        console.print("[yellow]No jobs found[/yellow]")
        return

    console.print(
        _table(
            f"Queue Jobs ({len(found)} shown)",
            ["ID", "File number", "Filed", "Status", "Attempts", "Error"],
            (
                [
                    str(job.id),
                    job.filing_number,
                    job.filing_date,
                    _styled(job.status),
                    str(job.attempts),
                    (job.last_error or "")[:40],
                ]
                for job in found
            ),
        )
    )


@app.command()
def stats() -> None:
    """Show job counts per status."""
    counts = _with_db(lambda: _job_store().count_by_status())
    rows = [["total", str(sum(counts.values()))]]
    rows += [[_styled(s), str(counts[s.value])] for s in JobStatus]
    console.print(_table("Queue Statistics", ["Status", "Jobs"], rows))


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Bind address")] = "0.0.0.0",
    port: Annotated[int, typer.Option("--port", "-p", help="Bind port")] = 8000,
    reload: Annotated[bool, typer.Option("--reload", "-r", help="Reload on code changes")] = False,
) -> None:
    """Serve the scrape trigger and queue inspection API."""
    import uvicorn

    settings = get_settings()
    if not settings.api_key:
        console.print("[yellow]API_KEY is not set; every API request will be rejected[/yellow]")

    console.print(f"[blue]Lienflow API[/blue] on {host}:{port} (debug={settings.debug})")
    uvicorn.run(
        "api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="debug" if settings.debug else "info",
    )


@app.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"[blue]Lienflow[/blue] v{VERSION}")


if __name__ == "__main__":
    app()
