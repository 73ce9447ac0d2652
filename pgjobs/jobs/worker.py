"""
Worker: locks jobs one at a time, runs their handlers and retires them.
"""

import asyncio
import contextlib
import inspect
import time
import traceback
from enum import Enum
from typing import Any

from pgjobs.config.logging import get_logger
from pgjobs.core.events import EventLog, JobEvent
from pgjobs.core.exceptions import JobTimeoutError, StorageError
from pgjobs.core.registries import HandlerRegistry, JobHandler
from pgjobs.infra.adapters.base import Adapter
from pgjobs.jobs.context import JobContext
from pgjobs.jobs.leaky_bucket import Clock
from pgjobs.jobs.locker import (
    DEFAULT_CURSOR_EXPIRY,
    DEFAULT_LOCK_BUDGET,
    DEFAULT_LOCK_WINDOW,
    Locker,
)
from pgjobs.jobs.schemas import DEFAULT_QUEUE, Job

logger = get_logger(__name__)

# Time a worker waits before checking Postgres for its next job
DEFAULT_WAKE_INTERVAL = 5.0


class WorkResult(str, Enum):
    """Outcome of a single Worker.work() call."""

    JOB_WORKED = "job_worked"
    JOB_NOT_FOUND = "job_not_found"
    POSTGRES_ERROR = "postgres_error"


def default_retry_interval(error_count: int) -> float:
    """Exponential back off when retrying failures."""
    return float(error_count**4 + 3)


def format_error(error: BaseException) -> str:
    return "".join(traceback.format_exception(error)).rstrip()


class Worker:
    """
    Works jobs from one queue.

    Handler failures are recorded against the job and retried later; storage
    failures make the loop sleep and try again. Only stop() ends the loop.
    """

    def __init__(
        self,
        adapter: Adapter,
        registry: HandlerRegistry,
        *,
        queue: str = DEFAULT_QUEUE,
        wake_interval: float = DEFAULT_WAKE_INTERVAL,
        lock_cursor_expiry: float = DEFAULT_CURSOR_EXPIRY,
        lock_window: float = DEFAULT_LOCK_WINDOW,
        lock_budget: float = DEFAULT_LOCK_BUDGET,
        events: EventLog | None = None,
        name: str | None = None,
        clock: Clock | None = None,
    ):
        self.adapter = adapter
        self.registry = registry
        self.queue = queue
        self.wake_interval = wake_interval
        self.name = name or f"worker-{id(self):x}"
        self.events = events or EventLog()
        self.locker = Locker(
            adapter,
            queue=queue,
            cursor_expiry=lock_cursor_expiry,
            window=lock_window,
            budget=lock_budget,
            clock=clock,
        )
        self.current_job: JobContext | None = None
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """
        Ask the worker to finish.

        The loop exits after the current iteration, and the running job (if
        any) sees ``ctx.stop_requested``. Handler code is never interrupted
        here; see WorkerPool.stop for the forced path.
        """
        self._stopping.set()
        if self.current_job is not None:
            self.current_job.request_stop()

    async def work_loop(self) -> None:
        logger.info("worker_start", msg="Worker starting", worker=self.name, queue=self.queue)

        while not self._stopping.is_set():
            result = await self.work()

            # Drain the queue while there is work, back off when idle or when
            # Postgres is unavailable
            if result is not WorkResult.JOB_WORKED:
                await self._sleep(self.wake_interval)

        logger.info("worker_stop", msg="Worker stopped", worker=self.name, queue=self.queue)

    async def work(self) -> WorkResult:
        try:
            # Advisory locks are session-level, so lock, work and unlock must
            # all happen on the same connection
            async with self.adapter.checkout():
                async with self.locker.locked_job() as job:
                    if job is None:
                        self.events.emit(
                            JobEvent.JOB_NOT_FOUND,
                            "No job available to work",
                            queue=self.queue,
                            worker=self.name,
                        )
                        return WorkResult.JOB_NOT_FOUND

                    await self._work_job(job)
                    return WorkResult.JOB_WORKED

        except StorageError as error:
            # A bad connection must not halt the work loop
            self.events.emit(
                JobEvent.POSTGRES_ERROR,
                "Postgres error while working jobs",
                queue=self.queue,
                worker=self.name,
                error=error.message,
                details=error.details,
            )
            return WorkResult.POSTGRES_ERROR

    async def _work_job(self, job: Job) -> None:
        ctx = JobContext(job, self.adapter)
        if self._stopping.is_set():
            ctx.request_stop()
        self.current_job = ctx

        fields = {**job.log_fields(), "worker": self.name}
        self.events.emit(
            JobEvent.JOB_BEGIN, "Job acquired, beginning work", latency=job.latency, **fields
        )

        handler: JobHandler | None = None
        start = time.monotonic()
        try:
            handler = self.registry.resolve(job.job_type)
            await self._run_handler(handler, ctx)

        except asyncio.CancelledError as cancelled:
            # Forced interruption from WorkerPool.stop. Record it against the
            # job, then let the cancellation end this task.
            timeout = JobTimeoutError()
            timeout.__cause__ = cancelled
            await self._handle_failure(timeout, job, handler, time.monotonic() - start, fields)
            raise

        except Exception as error:
            await self._handle_failure(error, job, handler, time.monotonic() - start, fields)

        else:
            await self.adapter.execute("destroy_job", job.key)
            self.events.emit(
                JobEvent.JOB_WORKED,
                "Successfully worked job",
                duration=time.monotonic() - start,
                **fields,
            )

        finally:
            self.current_job = None

    async def _run_handler(self, handler: JobHandler, ctx: JobContext) -> None:
        run = handler.run
        if inspect.iscoroutinefunction(run) or inspect.iscoroutinefunction(
            getattr(run, "__call__", None)
        ):
            await run(ctx, *ctx.job.args)
            return

        # Cancelling the await leaves the thread running to completion
        result = await asyncio.to_thread(run, ctx, *ctx.job.args)
        if inspect.isawaitable(result):
            await result

    async def _handle_failure(
        self,
        error: BaseException,
        job: Job,
        handler: JobHandler | None,
        duration: float,
        fields: dict[str, Any],
    ) -> None:
        """Set the error and retry with back-off."""
        count = job.error_count + 1
        delay = self._retry_delay(handler, count)

        self.events.emit(
            JobEvent.JOB_ERROR,
            "Job failed with error",
            duration=duration,
            error=repr(error),
            retry_in=delay,
            **{**fields, "error_count": count},
        )

        await self.adapter.execute(
            "set_error",
            {
                "error_count": count,
                "delay": delay,
                "last_error": format_error(error),
                **job.key,
            },
        )

        await self._call_failure_hook(handler, error, job)

    def _retry_delay(self, handler: JobHandler | None, count: int) -> float:
        interval = getattr(handler, "retry_interval", None)
        if interval is None:
            return default_retry_interval(count)

        try:
            return float(interval(count) if callable(interval) else interval)
        except Exception:
            logger.exception(
                "retry_interval_error",
                msg="Handler retry_interval failed, using default back-off",
                job_type=type(handler).__name__,
                error_count=count,
            )
            return default_retry_interval(count)

    async def _call_failure_hook(
        self, handler: JobHandler | None, error: BaseException, job: Job
    ) -> None:
        hook = getattr(handler, "handle_failure", None)
        if hook is None:
            return

        # The hook must never take down the work loop
        try:
            result = hook(error, job)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "failure_hook_error",
                msg="Job failure handler raised",
                worker=self.name,
                **job.log_fields(),
            )

    async def _sleep(self, seconds: float) -> None:
        # Returns early when stop() is called
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
