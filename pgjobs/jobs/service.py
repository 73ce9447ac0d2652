from datetime import datetime
from typing import Any

from pgjobs.core.events import EventLog, JobEvent
from pgjobs.infra.adapters.base import Adapter
from pgjobs.jobs.schemas import DEFAULT_PRIORITY, DEFAULT_QUEUE, Job, JobCreate, JobStats


async def enqueue(
    adapter: Adapter,
    job_type: str,
    *args: Any,
    queue: str | None = None,
    priority: int | None = None,
    run_at: datetime | None = None,
    retryable: bool = True,
    events: EventLog | None = None,
) -> Job:
    """
    Insert a job for ``job_type`` with the given JSON arguments.

    Runs inside the caller's transaction when there is one, so a job can be
    committed atomically with the data it refers to.
    """
    payload = JobCreate(
        job_type=job_type,
        args=list(args),
        queue=DEFAULT_QUEUE if queue is None else queue,
        priority=DEFAULT_PRIORITY if priority is None else priority,
        run_at=run_at,
        retryable=retryable,
    )

    rows = await adapter.execute("insert_job", payload.insert_params())
    job = Job.model_validate(rows[0])

    (events or EventLog()).emit(JobEvent.JOB_ENQUEUED, "Job enqueued", **job.log_fields())

    return job


async def job_stats(adapter: Adapter) -> list[JobStats]:
    """Summarise the jobs table per queue and job type, busiest first."""
    rows = await adapter.execute("job_stats")
    return [JobStats.model_validate(row) for row in rows]
