"""
Storage adapter contract.

Workers talk to the store only through an Adapter. Advisory locks are
session-scoped, so a worker checks out one session for the whole
lock -> work -> unlock cycle; ``checkout`` is re-entrant within a task so
nested calls (the locker, the worker, the handler) share that session.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import AbstractAsyncContextManager
from typing import Any

Row = dict[str, Any]


class Adapter(ABC):
    """Base class for storage adapters."""

    @abstractmethod
    def checkout(self) -> AbstractAsyncContextManager[Any]:
        """
        Hold a single session for the duration of the ``async with`` block.

        Re-entrant: a nested checkout in the same task yields the same session.
        """

    @abstractmethod
    async def execute(
        self, command: str, params: Mapping[str, Any] | None = None
    ) -> list[Row]:
        """
        Run a named statement (see ``pgjobs.infra.sql.SQL``) and return its rows.

        Driver and connectivity failures are raised as StorageError.
        """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Run the block in a transaction, joining one that is already open."""

    @abstractmethod
    async def in_transaction(self) -> bool:
        """Whether the current task's session is inside ``transaction()``."""

    async def try_lock(self, job_id: int) -> bool:
        """Take the advisory lock for a job without waiting."""
        rows = await self.execute("try_lock", {"job_id": job_id})
        return bool(rows and rows[0]["locked"])

    async def unlock(self, job_id: int) -> None:
        """Release an advisory lock held by the current session."""
        await self.execute("unlock_job", {"job_id": job_id})

    async def close(self) -> None:
        """Release any resources held by the adapter."""
