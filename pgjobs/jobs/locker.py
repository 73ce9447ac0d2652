"""
Acquires jobs from the jobs table with advisory locks.

For performance, the locker remembers the id of the last job it locked and
starts the next scan from there. Scans that must step over many rows locked by
other workers get slow quickly; resuming after our own last job pushes that
point further out. The cursor expires after ``cursor_expiry`` seconds, and is
reset whenever a scan comes back empty, so jobs behind it are never starved
for long.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from pgjobs.config.logging import get_logger
from pgjobs.infra.adapters.base import Adapter
from pgjobs.jobs.leaky_bucket import Clock, LeakyBucket, MonotonicClock
from pgjobs.jobs.schemas import DEFAULT_QUEUE, Job

logger = get_logger(__name__)

DEFAULT_CURSOR_EXPIRY = 5.0
DEFAULT_LOCK_WINDOW = 10.0
DEFAULT_LOCK_BUDGET = 10.0


class Locker:
    """Finds and locks the next eligible job on one queue."""

    def __init__(
        self,
        adapter: Adapter,
        queue: str = DEFAULT_QUEUE,
        cursor_expiry: float = DEFAULT_CURSOR_EXPIRY,
        window: float = DEFAULT_LOCK_WINDOW,
        budget: float = DEFAULT_LOCK_BUDGET,
        clock: Clock | None = None,
    ):
        self.adapter = adapter
        self.queue = queue
        self.cursor_expiry = cursor_expiry
        self.clock = clock or MonotonicClock()
        self.bucket = LeakyBucket(window=window, budget=budget, clock=self.clock)
        self.cursor = 0
        self.cursor_expires_at = self.clock.now()

    @asynccontextmanager
    async def locked_job(self) -> AsyncIterator[Job | None]:
        """
        Lock the next eligible job for the duration of the ``async with`` block.

        Yields None when nothing can be locked right now. The advisory lock is
        always released on exit, whether the block succeeds, raises or is
        cancelled. Storage errors propagate to the caller.
        """
        async with self.adapter.checkout():
            if self._cursor_expired():
                self._reset_cursor()

            job = await self._lock_job()

            # Jobs behind the cursor may have become due since we last scanned
            # from the front, so give them a chance before reporting no work
            if job is None and self.cursor != 0:
                self._reset_cursor()
                job = await self._lock_job()

            if job is None:
                self._reset_cursor()

            locked_id = job.job_id if job is not None else None
            try:
                # Advisory locks ignore MVCC: the row we just locked may have
                # been worked, deleted and unlocked by another worker after our
                # scan's snapshot was taken. Check it still exists.
                if job is not None and not await self._exists(job):
                    logger.debug(
                        "lock_race",
                        msg="Locked job no longer exists, treating as not found",
                        **job.log_fields(),
                    )
                    await self.adapter.unlock(job.job_id)
                    locked_id = None
                    job = None

                if job is not None:
                    self.cursor = job.job_id

                yield job
            finally:
                if locked_id is not None:
                    await self.adapter.unlock(locked_id)

    async def _lock_job(self) -> Job | None:
        await self.bucket.refill()
        rows = await self.bucket.observe(
            lambda: self.adapter.execute(
                "lock_job", {"queue": self.queue, "cursor": self.cursor}
            )
        )
        return Job.model_validate(rows[0]) if rows else None

    async def _exists(self, job: Job) -> bool:
        return bool(await self.adapter.execute("check_job", job.key))

    def _cursor_expired(self) -> bool:
        return self.clock.now() >= self.cursor_expires_at

    def _reset_cursor(self) -> None:
        self.cursor = 0
        self.cursor_expires_at = self.clock.now() + self.cursor_expiry
