import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import Config
from .errors import QueueError
from .models import Job, JobState
from .queue import JobQueue
from .storage import Storage
from .supervisor import WorkerSupervisor
from .utils import DATA_DIR_ENV, db_path, format_timestamp, resolve_data_dir, setup_logging
from .worker import DEFAULT_GRACE_PERIOD, DEFAULT_POLL_INTERVAL

app = typer.Typer(add_completion=False, help="queuectl: background job queue with retries and a dead letter queue.")
worker_app = typer.Typer(help="Manage worker processes.")
dlq_app = typer.Typer(help="Dead Letter Queue operations.")
config_app = typer.Typer(help="Manage configuration.")
app.add_typer(worker_app, name="worker")
app.add_typer(dlq_app, name="dlq")
app.add_typer(config_app, name="config")

console = Console()
err_console = Console(stderr=True)

STATE_STYLES = {
    JobState.PENDING: "yellow",
    JobState.PROCESSING: "blue",
    JobState.COMPLETED: "green",
    JobState.FAILED: "magenta",
    JobState.DEAD: "red",
}


@dataclass
class AppContext:
    data_dir: Path
    verbose: bool = False
    _storage: Optional[Storage] = field(default=None, repr=False)

    @property
    def storage(self) -> Storage:
        if self._storage is None:
            self._storage = Storage(db_path(self.data_dir))
        return self._storage

    @property
    def config(self) -> Config:
        return Config(self.storage)

    @property
    def queue(self) -> JobQueue:
        return JobQueue(self.storage, self.config)

    @property
    def supervisor(self) -> WorkerSupervisor:
        return WorkerSupervisor(self.data_dir)


def _fail(message: str) -> None:
    err_console.print(f"[red]✗ Error:[/] {escape(message)}")
    raise typer.Exit(1)


def _jobs_table(jobs: List[Job], title: str) -> Table:
    table = Table("ID", "State", "Command", "Attempts", "Next Retry", "Error", "Created", title=title, show_lines=True)
    for job in jobs:
        style = STATE_STYLES.get(job.state, "white")
        table.add_row(
            escape(job.id),
            f"[{style}]{job.state.value}[/]",
            escape(job.command),
            f"{job.attempts}/{job.max_retries}",
            format_timestamp(job.next_retry_at) if job.next_retry_at else "N/A",
            escape(job.error_message or ""),
            format_timestamp(job.created_at),
        )
    return table


@app.callback()
def main(
    ctx: typer.Context,
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", envvar=DATA_DIR_ENV, help="Directory holding jobs.db and worker pid files (default ./.queuectl)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    setup_logging(verbose)
    ctx.obj = AppContext(data_dir=resolve_data_dir(data_dir), verbose=verbose)


# ----------------------------
# Jobs
# ----------------------------
@app.command(help="Add a new job from a JSON string, e.g. '{\"id\": \"job1\", \"command\": \"echo hi\"}'.")
def enqueue(ctx: typer.Context, job_json: str = typer.Argument(..., help="Job JSON with id, command and optional max_retries.")):
    try:
        data = json.loads(job_json)
    except json.JSONDecodeError as exc:
        _fail(f"Invalid JSON: {exc}")
    try:
        job = ctx.obj.queue.enqueue(data)
    except QueueError as exc:
        _fail(str(exc))
    console.print(f"[green]✓[/] Job {escape(job.id)} enqueued successfully")
    typer.echo(json.dumps(job.to_dict(), indent=2))


@app.command("list", help="List jobs, optionally filtered by state.")
def list_jobs(
    ctx: typer.Context,
    state: Optional[str] = typer.Option(None, "--state", "-s", help="pending/processing/completed/failed/dead"),
):
    try:
        jobs = ctx.obj.queue.list(state)
    except QueueError as exc:
        _fail(str(exc))
    if not jobs:
        console.print("[yellow]No jobs found[/]")
        return
    console.print(_jobs_table(jobs, f"Jobs ({state})" if state else "Jobs"))


@app.command(help="Show job counts per state, active workers and configuration.")
def status(ctx: typer.Context):
    stats = ctx.obj.queue.get_stats()
    active = ctx.obj.supervisor.active_count()

    queue_table = Table(title="Queue Status", header_style="bold magenta")
    queue_table.add_column("State")
    queue_table.add_column("Count", justify="right")
    for state in JobState:
        queue_table.add_row(f"[{STATE_STYLES[state]}]{state.value}[/]", str(stats.get(state.value, 0)))
    queue_table.add_row("Total", str(sum(stats.values())), style="bold")

    config_table = Table(title="Configuration", header_style="bold green")
    config_table.add_column("Setting")
    config_table.add_column("Value")
    for key, value in sorted(ctx.obj.config.get_all().items()):
        config_table.add_row(key, value)

    console.print(queue_table)
    console.print(f"Active workers: [cyan]{active}[/]")
    console.print(config_table)
    if active == 0 and stats.get(JobState.PENDING.value, 0):
        console.print("[yellow]Warning: there are pending jobs but no active workers[/]")


# ----------------------------
# DLQ
# ----------------------------
@dlq_app.command("list", help="List jobs in the Dead Letter Queue.")
def dlq_list(ctx: typer.Context):
    jobs = ctx.obj.queue.get_dead_jobs()
    if not jobs:
        console.print("[yellow]No jobs in Dead Letter Queue[/]")
        return
    table = Table("ID", "Command", "Attempts", "Error", "Failed At", title="Dead Letter Queue")
    for job in jobs:
        table.add_row(
            escape(job.id),
            escape(job.command),
            f"{job.attempts}/{job.max_retries}",
            escape(job.error_message or "Unknown error"),
            format_timestamp(job.updated_at),
        )
    console.print(table)


@dlq_app.command("retry", help="Move a dead job back to pending with its attempts reset.")
def dlq_retry(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job ID to retry")):
    try:
        job = ctx.obj.queue.retry_from_dead(job_id)
    except QueueError as exc:
        _fail(str(exc))
    console.print(f"[green]✓[/] Job {escape(job.id)} moved back to pending queue")


# ----------------------------
# Config
# ----------------------------
@config_app.command("set", help="Set max-retries or backoff-base.")
def config_set(ctx: typer.Context, key: str, value: str):
    try:
        stored = ctx.obj.config.set(key, value)
    except QueueError as exc:
        _fail(str(exc))
    console.print(f"[green]✓[/] {key} set to {stored}")


@config_app.command("get")
def config_get(ctx: typer.Context, key: str):
    value = ctx.obj.config.get(key)
    if value is None:
        _fail(f"Config key '{key}' not found")
    typer.echo(value)


@config_app.command("list")
def config_list(ctx: typer.Context):
    table = Table("Setting", "Value", title="Configuration")
    for key, value in sorted(ctx.obj.config.get_all().items()):
        table.add_row(key, value)
    console.print(table)


# ----------------------------
# Workers
# ----------------------------
@worker_app.command("start", help="Start worker processes in the foreground; Ctrl+C stops them gracefully.")
def worker_start(
    ctx: typer.Context,
    count: int = typer.Option(1, "--count", "-c", help="Number of workers to start"),
    poll_interval: float = typer.Option(DEFAULT_POLL_INTERVAL, "--poll-interval", help="Seconds between polls when idle"),
    grace_period: float = typer.Option(DEFAULT_GRACE_PERIOD, "--grace-period", help="Seconds to let a running job finish on stop"),
):
    if count < 1:
        _fail("Count must be a positive integer")
    supervisor = ctx.obj.supervisor
    processes = supervisor.start(count, poll_interval, grace_period, ctx.obj.verbose)
    console.print(f"Started {count} worker(s). Press Ctrl+C to stop.")
    supervisor.wait(processes, grace_period)
    console.print("All workers stopped")


@worker_app.command("stop", help="Stop all running workers gracefully.")
def worker_stop(
    ctx: typer.Context,
    timeout: float = typer.Option(DEFAULT_GRACE_PERIOD + 5, "--timeout", help="Seconds before remaining workers are killed"),
):
    stopped = ctx.obj.supervisor.stop(timeout)
    if stopped == 0:
        console.print("No workers running")
    else:
        console.print(f"Stopped {stopped} worker(s)")


def run():
    """Entrypoint so you can: python -m queuectl.cli ... or from main.py."""
    app()


if __name__ == "__main__":
    run()
