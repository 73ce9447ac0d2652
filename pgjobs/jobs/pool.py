"""
A group of workers sharing one event loop, with bounded shutdown.
"""

import asyncio
import contextvars
from typing import Any

from pgjobs.config.logging import get_logger
from pgjobs.core.exceptions import JobTimeoutError
from pgjobs.core.registries import HandlerRegistry
from pgjobs.infra.adapters.base import Adapter
from pgjobs.jobs.worker import Worker

logger = get_logger(__name__)

DEFAULT_STOP_TIMEOUT = 5.0
DEFAULT_JOIN_TIMEOUT = 1.0


class WorkerPool:
    """Runs each worker's loop in its own task."""

    def __init__(self, workers: list[Worker], tasks: list[asyncio.Task]):
        self.workers = workers
        self.tasks = tasks

    @classmethod
    def start(
        cls,
        count: int,
        adapter: Adapter,
        registry: HandlerRegistry,
        **worker_kwargs: Any,
    ) -> "WorkerPool":
        """Create ``count`` workers and start their loops on the running loop."""
        if count < 1:
            raise ValueError("A worker pool needs at least one worker")

        workers = [
            Worker(adapter, registry, name=f"worker-{i}", **worker_kwargs)
            for i in range(count)
        ]
        # A fresh context per task, so workers never inherit a checkout that
        # is open in the caller
        tasks = [
            asyncio.create_task(
                worker.work_loop(), name=worker.name, context=contextvars.Context()
            )
            for worker in workers
        ]
        logger.info("worker.start", msg="Starting workers", count=count)

        return cls(workers, tasks)

    @property
    def active_count(self) -> int:
        return sum(1 for task in self.tasks if not task.done())

    async def stop(
        self,
        timeout: float = DEFAULT_STOP_TIMEOUT,
        join_timeout: float = DEFAULT_JOIN_TIMEOUT,
    ) -> None:
        """
        Stop all workers, interrupting any that take longer than ``timeout``.

        Every worker is asked to stop at once and they share the same grace
        period, so shutdown takes at most about ``timeout + join_timeout``
        regardless of pool size. Workers still busy after the grace period
        are cancelled; the running job records a JobTimeoutError and is
        retried later. Interruption is best effort: a sync handler running in
        a thread carries on until it returns.
        """
        for worker in self.workers:
            worker.stop()

        if not self.tasks:
            return

        _, pending = await asyncio.wait(self.tasks, timeout=timeout)

        if pending:
            message = JobTimeoutError().message
            for worker, task in zip(self.workers, self.tasks):
                if task in pending:
                    logger.warning(
                        "worker.finish_timeout",
                        msg="Worker did not finish in time, interrupting",
                        worker=worker.name,
                        timeout=timeout,
                    )
                    task.cancel(message)

            # Give interrupted workers a moment to record the failure
            _, still_pending = await asyncio.wait(pending, timeout=join_timeout)
            for task in still_pending:
                logger.error(
                    "worker.abandoned",
                    msg="Worker ignored interruption",
                    worker=task.get_name(),
                )

        logger.info("worker.finish", msg="All workers have finished")

    async def wait(self) -> None:
        """Wait until every worker task has ended."""
        results = await asyncio.gather(*self.tasks, return_exceptions=True)
        for worker, result in zip(self.workers, results):
            if isinstance(result, Exception):
                logger.error(
                    "worker.crashed",
                    msg="Worker task ended with an error",
                    worker=worker.name,
                    error=repr(result),
                )
