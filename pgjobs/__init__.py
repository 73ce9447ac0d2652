"""
pgjobs: a Postgres job queue built on advisory locks.

Producers insert job rows; pools of workers in any number of processes claim
them one at a time with ``pg_try_advisory_lock``, run the registered handler
and delete the row on success or reschedule it with exponential backoff.
"""

from pgjobs.core.events import EventLog, JobEvent
from pgjobs.core.exceptions import (
    JobTimeoutError,
    PgJobsError,
    StorageError,
    UnresolvedHandlerError,
)
from pgjobs.core.registries import HandlerRegistry, JobHandler
from pgjobs.jobs.context import JobContext
from pgjobs.jobs.pool import WorkerPool
from pgjobs.jobs.schemas import DEFAULT_QUEUE, Job, JobCreate, JobStats
from pgjobs.jobs.service import enqueue, job_stats
from pgjobs.jobs.worker import Worker, WorkResult

__version__ = "1.0.0"

__all__ = [
    "DEFAULT_QUEUE",
    "EventLog",
    "HandlerRegistry",
    "Job",
    "JobContext",
    "JobCreate",
    "JobEvent",
    "JobHandler",
    "JobStats",
    "JobTimeoutError",
    "PgJobsError",
    "StorageError",
    "UnresolvedHandlerError",
    "WorkResult",
    "Worker",
    "WorkerPool",
    "enqueue",
    "job_stats",
]
