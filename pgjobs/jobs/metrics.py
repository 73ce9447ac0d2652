"""
Prometheus metrics for workers, fed from job events.

Register a JobMetrics instance as an EventLog listener. Worked seconds are
counted while jobs run (see ``track_running_jobs``), so a long job shows up in
the rate immediately instead of as a spike when it finishes.
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from pgjobs.config.logging import get_logger
from pgjobs.core.events import JobEvent
from pgjobs.infra.adapters.base import Adapter
from pgjobs.jobs.service import job_stats

logger = get_logger(__name__)

JOB_LABELS = ["queue", "job_type"]


class JobMetrics:
    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry or CollectorRegistry()
        self.clock = clock

        # worker name -> (labels, time worked seconds were last accounted up to)
        self._running: dict[str, tuple[tuple[str, str], float]] = {}

        self.jobs_worked = Counter(
            "pgjobs_jobs_worked_total",
            "Jobs worked, successfully or not",
            JOB_LABELS,
            registry=self.registry,
        )
        self.jobs_error = Counter(
            "pgjobs_jobs_error_total",
            "Jobs that failed with an error",
            JOB_LABELS,
            registry=self.registry,
        )
        self.jobs_worked_seconds = Counter(
            "pgjobs_jobs_worked_seconds_total",
            "Seconds spent working jobs",
            JOB_LABELS,
            registry=self.registry,
        )
        self.jobs_latency_seconds = Counter(
            "pgjobs_jobs_latency_seconds_total",
            "Seconds jobs waited past their run_at before being locked",
            JOB_LABELS,
            registry=self.registry,
        )
        self.postgres_errors = Counter(
            "pgjobs_worker_postgres_errors_total",
            "Postgres errors seen by workers",
            ["queue"],
            registry=self.registry,
        )
        self.active_workers = Gauge(
            "pgjobs_worker_group_active_workers_count",
            "Worker tasks still running",
            registry=self.registry,
        )
        self.expected_workers = Gauge(
            "pgjobs_worker_group_expected_workers_count",
            "Worker tasks the pool was started with",
            registry=self.registry,
        )
        self.queued = Gauge(
            "pgjobs_queue_queued",
            "Jobs in the table, including ones scheduled for later",
            JOB_LABELS,
            registry=self.registry,
        )

    def __call__(self, event: JobEvent, fields: Mapping[str, Any]) -> None:
        """EventLog listener."""
        if event is JobEvent.POSTGRES_ERROR:
            self.postgres_errors.labels(queue=fields.get("queue", "")).inc()
            # The worker's job, if any, has ended
            self._running.pop(fields.get("worker", ""), None)
            return

        if event not in (JobEvent.JOB_BEGIN, JobEvent.JOB_WORKED, JobEvent.JOB_ERROR):
            return

        labels = (fields["queue"], fields["job_type"])
        worker = fields.get("worker", "")

        if event is JobEvent.JOB_BEGIN:
            self._running[worker] = (labels, self.clock())
            if fields.get("latency") is not None:
                self.jobs_latency_seconds.labels(*labels).inc(max(fields["latency"], 0.0))
            return

        self.jobs_worked.labels(*labels).inc()
        if event is JobEvent.JOB_ERROR:
            self.jobs_error.labels(*labels).inc()

        running = self._running.pop(worker, None)
        if running is not None:
            _, since = running
            self.jobs_worked_seconds.labels(*labels).inc(self.clock() - since)

    def flush_running(self) -> None:
        """Count the time in-flight jobs have run since the last flush."""
        now = self.clock()
        for worker, (labels, since) in list(self._running.items()):
            self.jobs_worked_seconds.labels(*labels).inc(now - since)
            self._running[worker] = (labels, now)

    async def track_running_jobs(self, interval: float = 0.5) -> None:
        """Flush running job time every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.flush_running()

    def observe_pool(self, pool: Any) -> None:
        self.active_workers.set(pool.active_count)
        self.expected_workers.set(len(pool.workers))

    async def collect_queue(self, adapter: Adapter) -> None:
        """Refresh the queued gauge from the jobs table."""
        stats = await job_stats(adapter)
        self.queued.clear()
        for stat in stats:
            self.queued.labels(stat.queue, stat.job_type).set(stat.count)

    def expose(self, port: int, addr: str = "0.0.0.0") -> None:
        """Serve /metrics over HTTP from a background thread."""
        start_http_server(port, addr=addr, registry=self.registry)
        logger.info("metrics_serving", msg="Serving prometheus metrics", port=port)
