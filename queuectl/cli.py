"""
queuectl command line interface.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from queuectl import __version__, service
from queuectl.config import get_settings
from queuectl.constants import DEFAULT_LIST_LIMIT, JobState
from queuectl.db import Job, close_db, init_db
from queuectl.exceptions import QueueError
from queuectl.observability.logging import setup_logging
from queuectl.timeutil import isoformat, parse_timestamp
from queuectl.worker import run_workers

logger = logging.getLogger(__name__)

T = TypeVar("T")

console = Console()

app = typer.Typer(
    name="queuectl",
    help="queuectl - durable background job queue with workers, retries and DLQ.",
    no_args_is_help=True,
)
worker_app = typer.Typer(help="Start and stop workers.", no_args_is_help=True)
dlq_app = typer.Typer(help="Inspect and retry dead jobs.", no_args_is_help=True)
config_app = typer.Typer(help="Read and write runtime configuration.", no_args_is_help=True)

app.add_typer(worker_app, name="worker")
app.add_typer(dlq_app, name="dlq")
app.add_typer(config_app, name="config")

_state: dict[str, Any] = {"database_url": None}

_STATE_STYLES = {
    JobState.PENDING: "yellow",
    JobState.PROCESSING: "cyan",
    JobState.COMPLETED: "green",
    JobState.FAILED: "red",
    JobState.DEAD: "bold red",
}


def _run(operation: Callable[[], Awaitable[T]]) -> T:
    """Run one queue operation against a freshly opened store."""

    async def runner() -> T:
        await init_db(_state["database_url"])
        try:
            return await operation()
        finally:
            await close_db()

    try:
        return asyncio.run(runner())
    except QueueError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1) from e


def _jobs_table(title: str, jobs: Sequence[Job]) -> Table:
    table = Table(title=title)
    table.add_column("id", no_wrap=True)
    table.add_column("state")
    table.add_column("attempts", justify="right")
    table.add_column("max_retries", justify="right")
    table.add_column("run_at")
    table.add_column("command")
    table.add_column("last_error")

    for job in jobs:
        style = _STATE_STYLES.get(job.state, "")
        table.add_row(
            str(job.id),
            f"[{style}]{job.state.value}[/{style}]",
            str(job.attempts),
            str(job.max_retries),
            isoformat(job.run_at),
            escape(job.command),
            escape((job.last_error or "")[:80]),
        )
    return table


@app.callback()
def main_callback(
    database_url: Optional[str] = typer.Option(
        None,
        "--database-url",
        envvar="QUEUECTL_DATABASE_URL",
        help="SQLAlchemy URL of the job store.",
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)."
    ),
):
    """queuectl - durable background job queue."""
    _state["database_url"] = database_url
    setup_logging(level=log_level)


@app.command()
def enqueue(
    payload: str = typer.Argument(
        ..., help='Job JSON, e.g. \'{"command": "echo hi"}\'.'
    ),
    run_at: Optional[str] = typer.Option(
        None, "--run-at", help="ISO-8601 time before which the job must not run."
    ),
    max_retries: Optional[int] = typer.Option(
        None, "--max-retries", help="Retries allowed after the first attempt."
    ),
):
    """Add a new job to the queue."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] Invalid JSON: {e.msg}")
        raise typer.Exit(1) from e
    if not isinstance(data, dict):
        console.print("[red]Error:[/red] Job spec must be a JSON object")
        raise typer.Exit(1)

    if run_at is not None:
        try:
            data["run_at"] = parse_timestamp(run_at)
        except ValueError as e:
            console.print(f"[red]Error:[/red] Invalid --run-at value: {run_at!r}")
            raise typer.Exit(1) from e
    if max_retries is not None:
        data["max_retries"] = max_retries

    job = _run(lambda: service.enqueue(data))
    console.print(f"[green]Enqueued[/green] job {job.id}", soft_wrap=True)


@worker_app.command("start")
def worker_start(
    count: int = typer.Option(1, "--count", "-c", help="Number of workers."),
    poll_interval: Optional[int] = typer.Option(
        None, "--poll-interval", help="Idle polling interval in milliseconds."
    ),
):
    """Start workers in the foreground. Ctrl+C stops them gracefully."""
    console.print(f"Starting {count} worker(s). Ctrl+C to stop.")
    _run(lambda: run_workers(count, poll_interval))
    console.print("[yellow]Workers stopped.[/yellow]")


@worker_app.command("stop")
def worker_stop():
    """Ask running workers to exit after finishing their current job."""
    count = _run(service.request_stop)
    console.print(f"[yellow]Stop requested for {count} worker(s).[/yellow]")


@app.command()
def status():
    """Show job counts per state and active workers."""
    queue_status = _run(service.get_status)

    table = Table(title="Jobs")
    table.add_column("State")
    table.add_column("Count", justify="right")
    for state, count in queue_status.counts.items():
        table.add_row(state, str(count))
    table.add_row("[bold]total[/bold]", f"[bold]{queue_status.total}[/bold]")
    console.print(table)
    console.print(f"Active workers: {queue_status.active_workers}")


@app.command("list")
def list_jobs(
    state: Optional[str] = typer.Option(None, "--state", help="Filter by state."),
    limit: int = typer.Option(DEFAULT_LIST_LIMIT, "--limit", help="Page size."),
    offset: int = typer.Option(0, "--offset", help="Jobs to skip."),
):
    """List jobs, newest first."""
    jobs = _run(lambda: service.list_jobs(state, limit, offset))
    title = "Jobs" if not state else f"Jobs ({state})"
    console.print(_jobs_table(title, jobs))


@dlq_app.command("list")
def dlq_list(
    limit: int = typer.Option(DEFAULT_LIST_LIMIT, "--limit", help="Page size."),
    offset: int = typer.Option(0, "--offset", help="Jobs to skip."),
):
    """List dead jobs, most recently failed first."""
    jobs = _run(lambda: service.dlq_list(limit, offset))
    console.print(_jobs_table("DLQ (dead jobs)", jobs))


@dlq_app.command("retry")
def dlq_retry(job_id: str = typer.Argument(..., help="Id of the dead job.")):
    """Move a dead job back to pending with its attempts reset."""
    if not _run(lambda: service.dlq_retry(job_id)):
        console.print(f"[red]Not found in DLQ:[/red] {job_id}", soft_wrap=True)
        raise typer.Exit(1)
    console.print(f"[green]DLQ job re-queued:[/green] {job_id}", soft_wrap=True)


@config_app.command("get")
def config_get(key: Optional[str] = typer.Argument(None, help="Config key.")):
    """Show one config value, or all of them."""
    if key is not None:
        console.print(_run(lambda: service.get_config(key.replace("-", "_"))))
        return

    values = _run(service.get_all_config)
    table = Table(title="Config")
    table.add_column("Key")
    table.add_column("Value")
    for name, value in values.items():
        table.add_row(name, value)
    console.print(table)


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key."),
    value: str = typer.Argument(..., help="New value."),
):
    """Persist a runtime config value."""
    stored = _run(lambda: service.set_config(key.replace("-", "_"), value))
    console.print(f"set {key.replace('-', '_')}={stored}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
):
    """Run the HTTP API."""
    import uvicorn

    from queuectl.api import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(_state["database_url"]),
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def version():
    """Show version information."""
    console.print(f"queuectl {__version__}")


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
