"""pgjobs CLI - Main Entry Point"""

import asyncio
import importlib
import json
import signal
from datetime import UTC, datetime, timedelta

import typer
from rich.console import Console
from rich.panel import Panel

from pgjobs.config.logging import get_logger, setup_logging
from pgjobs.config.settings import Settings, get_settings
from pgjobs.core.events import EventLog
from pgjobs.core.exceptions import PgJobsError, StorageError
from pgjobs.core.registries import HandlerRegistry
from pgjobs.infra.adapters import Adapter, PostgresAdapter
from pgjobs.infra.database import Database
from pgjobs.jobs.metrics import JobMetrics
from pgjobs.jobs.pool import WorkerPool
from pgjobs.jobs.service import enqueue as enqueue_job
from pgjobs.jobs.service import job_stats

from .formatting import create_stats_table, print_error, print_info, print_success

console = Console()
logger = get_logger(__name__)

# How often pool and queue gauges are refreshed while serving metrics
METRICS_REFRESH_INTERVAL = 5.0

app = typer.Typer(
    name="pgjobs",
    help="Postgres advisory lock job queue",
    rich_markup_mode="rich",
)


def build_adapter(settings: Settings) -> Adapter:
    """Create the storage adapter commands run against."""
    return PostgresAdapter(Database(settings).engine)


def load_registry(path: str) -> HandlerRegistry:
    """Import a HandlerRegistry given as ``module:attribute``."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("expected module:attribute", param_hint="--handlers")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"cannot import {module_name}: {e}", param_hint="--handlers")

    registry = getattr(module, attr, None)
    if not isinstance(registry, HandlerRegistry):
        raise typer.BadParameter(
            f"{path} is not a HandlerRegistry", param_hint="--handlers"
        )
    return registry


@app.command()
def work(
    handlers: str = typer.Option(
        ..., "--handlers", "-H", help="HandlerRegistry to work with, as module:attribute"
    ),
    workers: int | None = typer.Option(None, "--workers", "-w", min=1, help="Number of workers"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to work"),
    wake_interval: float | None = typer.Option(
        None, "--wake-interval", help="Seconds to sleep when there is no work"
    ),
):
    """⚙️ Run a pool of workers until interrupted"""
    if wake_interval is not None and wake_interval <= 0:
        raise typer.BadParameter("must be positive", param_hint="--wake-interval")

    settings = get_settings()
    setup_logging(settings)

    registry = load_registry(handlers)
    registry.freeze()

    asyncio.run(
        _work(
            settings,
            registry,
            count=settings.worker_count if workers is None else workers,
            queue=settings.queue if queue is None else queue,
            wake_interval=settings.wake_interval if wake_interval is None else wake_interval,
        )
    )


async def _work(
    settings: Settings,
    registry: HandlerRegistry,
    count: int,
    queue: str,
    wake_interval: float,
) -> None:
    adapter = build_adapter(settings)
    events = EventLog()
    background: list[asyncio.Task] = []

    metrics = None
    if settings.metrics_port is not None:
        metrics = JobMetrics()
        events.subscribe(metrics)
        metrics.expose(settings.metrics_port)
        background.append(asyncio.create_task(metrics.track_running_jobs()))

    pool = WorkerPool.start(
        count,
        adapter,
        registry,
        queue=queue,
        wake_interval=wake_interval,
        lock_cursor_expiry=settings.lock_cursor_expiry,
        lock_window=settings.lock_window,
        lock_budget=settings.lock_budget,
        events=events,
    )

    if metrics is not None:
        background.append(asyncio.create_task(_refresh_metrics(metrics, pool, adapter)))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    stopping = asyncio.create_task(stop.wait())
    finished = asyncio.create_task(pool.wait())
    try:
        await asyncio.wait({stopping, finished}, return_when=asyncio.FIRST_COMPLETED)
        logger.info("shutdown", msg="Stopping workers", timeout=settings.stop_timeout)
        await pool.stop(settings.stop_timeout, settings.stop_join_timeout)
    finally:
        for task in (stopping, finished, *background):
            task.cancel()
        await asyncio.gather(stopping, finished, *background, return_exceptions=True)
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await adapter.close()


async def _refresh_metrics(metrics: JobMetrics, pool: WorkerPool, adapter: Adapter) -> None:
    while True:
        metrics.observe_pool(pool)
        try:
            await metrics.collect_queue(adapter)
        except StorageError as e:
            logger.warning("metrics_queue_error", msg="Could not collect queue stats", error=e.message)
        await asyncio.sleep(METRICS_REFRESH_INTERVAL)


@app.command()
def enqueue(
    job_type: str = typer.Argument(..., help="Registered job type"),
    args: str = typer.Argument("[]", help="Handler arguments as a JSON array"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue to place the job on"),
    priority: int | None = typer.Option(
        None, "--priority", "-p", help="Priority, lower is more urgent"
    ),
    run_in: float | None = typer.Option(
        None, "--run-in", help="Delay in seconds before the job may run"
    ),
):
    """➕ Enqueue a job"""
    try:
        decoded = json.loads(args)
    except json.JSONDecodeError as e:
        print_error(f"ARGS is not valid JSON: {e}")
        raise typer.Exit(1)

    if not isinstance(decoded, list):
        print_error("ARGS must be a JSON array")
        raise typer.Exit(1)

    run_at = datetime.now(UTC) + timedelta(seconds=run_in) if run_in is not None else None

    settings = get_settings()
    setup_logging(settings)

    try:
        job = asyncio.run(
            _enqueue(settings, job_type, decoded, queue=queue, priority=priority, run_at=run_at)
        )
    except (PgJobsError, ValueError) as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1)

    print_success(f"Enqueued {job.job_type} as job {job.job_id}")


async def _enqueue(settings: Settings, job_type: str, args: list, **options):
    adapter = build_adapter(settings)
    try:
        return await enqueue_job(adapter, job_type, *args, **options)
    finally:
        await adapter.close()


@app.command()
def stats():
    """📊 Show jobs per queue and job type"""
    settings = get_settings()
    setup_logging(settings)

    try:
        rows = asyncio.run(_stats(settings))
    except PgJobsError as e:
        print_error(f"Failed to read job stats: {e}")
        raise typer.Exit(1)

    if not rows:
        console.print(Panel(
            "📭 [yellow]No jobs queued[/yellow]",
            title="Jobs",
            border_style="yellow",
        ))
        return

    console.print(create_stats_table(rows))


async def _stats(settings: Settings):
    adapter = build_adapter(settings)
    try:
        return await job_stats(adapter)
    finally:
        await adapter.close()


@app.command("init-db")
def init_db():
    """🗄️ Create the jobs table and index"""
    settings = get_settings()
    setup_logging(settings)
    print_info("Creating schema")

    try:
        asyncio.run(_init_db(settings))
    except Exception as e:
        print_error(f"Failed to create schema: {e}")
        raise typer.Exit(1)

    print_success("Schema ready")


async def _init_db(settings: Settings) -> None:
    database = Database(settings)
    try:
        await database.create_schema()
    finally:
        await database.close()


if __name__ == "__main__":
    app()
