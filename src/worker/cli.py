#!/usr/bin/env python3
# cli.py
# clipqueue CLI
#
# Typer + Rich front end over the job orchestrator

import json
import logging
from typing import List, Optional

import typer
from redis import Redis
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from clip_queue.config import Settings, get_settings
from clip_queue.errors import ConfigurationError
from clip_queue.queue import JobQueue
from clip_queue.redis_keys import QueueKeys
from clip_queue.store import JobStore
from integrations.base import TaskAdapter
from integrations.klap import KlapClient
from integrations.submagic import SubmagicClient
from poller.orchestrator import JobOrchestrator

from .worker import Worker

app = typer.Typer(
    help="🎬 clipqueue: drive Klap / Submagic clip jobs to completion",
    add_completion=False,
)

console = Console()
logger = logging.getLogger(__name__)


# -----------------------------
# Wiring
# -----------------------------

def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def build_adapters(settings: Settings) -> List[TaskAdapter]:
    """Every provider whose API key is configured."""
    adapters: List[TaskAdapter] = []
    if settings.klap_api_key:
        adapters.append(KlapClient(settings.klap_api_key, settings.klap_api_url))
    if settings.submagic_api_key:
        adapters.append(
            SubmagicClient(settings.submagic_api_key, settings.submagic_api_url)
        )
    return adapters


def build_orchestrator(
    settings: Settings,
    redis_client: Optional[Redis] = None,
    adapters: Optional[List[TaskAdapter]] = None,
) -> JobOrchestrator:
    redis_client = redis_client or Redis.from_url(settings.redis_url, decode_responses=True)
    store = JobStore(
        redis_client,
        keys=QueueKeys(settings.key_prefix),
        ttl=settings.job_ttl_seconds,
    )
    queue = JobQueue(redis_client, store)

    if adapters is None:
        adapters = build_adapters(settings)

    return JobOrchestrator(store, queue, adapters, max_attempts=settings.max_attempts)


# -----------------------------
# UI helpers
# -----------------------------

def success(msg: str):
    console.print(f"[green]✔ {msg}[/green]")


def error(msg: str):
    console.print(f"[bold red]✖ {msg}[/bold red]")


STATUS_STYLES = {
    "queued": "yellow",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
}


# -----------------------------
# Commands
# -----------------------------

@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
):
    settings = get_settings()
    configure_logging(log_level or settings.log_level)


@app.command()
def submit(
    key: str = typer.Argument(..., help="Correlation key (e.g. project id)"),
    url: str = typer.Argument(..., help="Source video URL"),
    provider: Optional[str] = typer.Option(
        None, "--provider", "-p", help="klap | submagic"
    ),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Video title"),
    export: bool = typer.Option(False, "--export", help="Export clips when ready"),
):
    """Queue a job, or return the active one for KEY."""
    orchestrator = build_orchestrator(get_settings())

    payload = {"url": url}
    if title:
        payload["title"] = title
    if export:
        payload["export"] = True

    try:
        job = orchestrator.submit(key, payload, provider=provider)
    except ValueError as e:
        error(str(e))
        raise typer.Exit(code=1)

    success(f"Job {job.id} is {job.status.value}")


@app.command()
def status(key: str = typer.Argument(..., help="Correlation key")):
    """Show the current job for KEY."""
    orchestrator = build_orchestrator(get_settings(), adapters=[])
    job = orchestrator.store.get_by_correlation_key(key)

    if job is None:
        error(f"No job found for {key}")
        raise typer.Exit(code=1)

    style = STATUS_STYLES.get(job.status.value, "white")
    table = Table(show_header=False, box=None)
    table.add_row("Job", job.id)
    table.add_row("Provider", job.provider or "-")
    table.add_row("Status", f"[{style}]{job.status.value}[/{style}]")
    table.add_row("Progress", f"{job.progress}%")
    table.add_row("Attempts", str(job.attempts))
    if job.task_id:
        table.add_row("Task", job.task_id)
    if job.last_error:
        table.add_row("Last error", job.last_error)
    if job.error:
        table.add_row("Error", f"[red]{job.error}[/red] ({job.error_kind})")

    console.print(Panel.fit(table, title=f"[bold]{key}[/bold]", border_style=style))

    if job.result is not None:
        console.print_json(json.dumps(job.result))


@app.command()
def work(
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Stop after this many seconds"
    ),
    max_jobs: Optional[int] = typer.Option(
        None, "--max-jobs", help="Stop after this many jobs"
    ),
):
    """Run a worker until interrupted."""
    settings = get_settings()
    orchestrator = build_orchestrator(settings)

    if not orchestrator.adapters:
        error("No provider configured. Set KLAP_API_KEY and/or SUBMAGIC_API_KEY.")
        raise typer.Exit(code=1)

    console.print(
        Panel.fit(
            "[bold cyan]CLIPQUEUE WORKER[/bold cyan]\n"
            f"[white]Providers: {', '.join(sorted(orchestrator.adapters))}[/white]",
            border_style="cyan",
        )
    )

    worker = Worker(
        orchestrator,
        sweep_interval=settings.sweep_interval_seconds,
        stale_after=settings.stale_after_seconds,
    )
    processed = worker.start(timeout=timeout, max_jobs=max_jobs)
    success(f"Processed {processed} jobs")


@app.command()
def sweep(
    max_age: Optional[float] = typer.Option(
        None, "--max-age", help="Seconds without progress before a job is failed"
    ),
):
    """Fail abandoned in-flight jobs and drop orphaned ids."""
    settings = get_settings()
    orchestrator = build_orchestrator(settings, adapters=[])
    reclaimed = orchestrator.sweep(max_age or settings.stale_after_seconds)
    success(f"Reclaimed {reclaimed} jobs")


@app.command()
def stats():
    """Show queue sizes."""
    orchestrator = build_orchestrator(get_settings(), adapters=[])
    counts = orchestrator.queue.stats()

    table = Table(title="Queue")
    table.add_column("List")
    table.add_column("Jobs", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)


def run():
    try:
        app()
    except ConfigurationError as e:
        error(str(e))
        raise SystemExit(1)


if __name__ == "__main__":
    run()
