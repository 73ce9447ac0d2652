"""
In-process adapter with the same statements and locking rules as Postgres.

Useful for tests and for running handlers in a single process without a
database. Advisory locks belong to the checkout session that took them and are
re-entrant, as they are in Postgres; closing the outermost checkout releases
whatever the session still holds, like a closed connection would.
"""

import copy
import itertools
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import UTC, datetime, timedelta
from typing import Any

from pgjobs.infra.adapters.base import Adapter, Row
from pgjobs.jobs.schemas import DEFAULT_PRIORITY, DEFAULT_QUEUE

KEY_FIELDS = ("queue", "priority", "run_at", "job_id")


def utcnow() -> datetime:
    return datetime.now(UTC)


class MemorySession:
    """Stands in for a database connection."""

    _ids = itertools.count(1)

    def __init__(self):
        self.id = next(self._ids)

    def __repr__(self) -> str:
        return f"<MemorySession {self.id}>"


class MemoryAdapter(Adapter):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.rows: dict[int, Row] = {}
        self._locks: dict[int, tuple[MemorySession, int]] = {}
        self._job_ids = itertools.count(1)
        self._session: ContextVar[MemorySession | None] = ContextVar(
            f"pgjobs_memory_session_{id(self)}", default=None
        )
        self._transaction_depth: ContextVar[int] = ContextVar(
            f"pgjobs_memory_transaction_depth_{id(self)}", default=0
        )
        self._statements: dict[str, Callable[[MemorySession, Mapping[str, Any]], list[Row]]] = {
            "lock_job": self._lock_job,
            "check_job": self._check_job,
            "set_error": self._set_error,
            "insert_job": self._insert_job,
            "destroy_job": self._destroy_job,
            "job_stats": self._job_stats,
            "try_lock": self._try_lock_statement,
            "unlock_job": self._unlock_statement,
        }

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[MemorySession]:
        current = self._session.get()
        if current is not None:
            yield current
            return

        session = MemorySession()
        token = self._session.set(session)
        try:
            yield session
        finally:
            self._session.reset(token)
            self._release_session(session)

    async def execute(
        self, command: str, params: Mapping[str, Any] | None = None
    ) -> list[Row]:
        if command not in self._statements:
            raise ValueError(f"Memory adapter has no statement named {command!r}")

        async with self.checkout() as session:
            return self._statements[command](session, params or {})

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self.checkout():
            token = self._transaction_depth.set(self._transaction_depth.get() + 1)
            try:
                yield
            finally:
                self._transaction_depth.reset(token)

    async def in_transaction(self) -> bool:
        return self._transaction_depth.get() > 0

    def locked_job_ids(self) -> set[int]:
        """Job ids currently advisory-locked by any session."""
        return set(self._locks)

    # Advisory locks

    def _acquire(self, session: MemorySession, job_id: int) -> bool:
        owner, count = self._locks.get(job_id, (session, 0))
        if owner is not session:
            return False
        self._locks[job_id] = (session, count + 1)
        return True

    def _release(self, session: MemorySession, job_id: int) -> bool:
        owner, count = self._locks.get(job_id, (None, 0))
        if owner is not session:
            return False
        if count > 1:
            self._locks[job_id] = (session, count - 1)
        else:
            del self._locks[job_id]
        return True

    def _release_session(self, session: MemorySession) -> None:
        for job_id in [j for j, (owner, _) in self._locks.items() if owner is session]:
            del self._locks[job_id]

    # Statements

    def _lock_job(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        now = self.clock()
        candidates = sorted(
            (
                row
                for row in self.rows.values()
                if row["queue"] == params["queue"]
                and row["job_id"] >= params["cursor"]
                and row["run_at"] <= now
                and row["retryable"]
            ),
            key=lambda row: (row["priority"], row["run_at"], row["job_id"]),
        )

        # One candidate at a time, stopping at the first lock we get
        for row in candidates:
            if self._acquire(session, row["job_id"]):
                locked = copy.deepcopy(row)
                locked["latency"] = (now - row["run_at"]).total_seconds()
                return [locked]

        return []

    def _find(self, params: Mapping[str, Any]) -> Row | None:
        row = self.rows.get(params["job_id"])
        if row is None or any(row[field] != params[field] for field in KEY_FIELDS):
            return None
        return row

    def _check_job(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        row = self._find(params)
        return [{"one": 1}] if row is not None and row["retryable"] else []

    def _set_error(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        row = self._find(params)
        if row is not None:
            row["error_count"] = params["error_count"]
            row["run_at"] = self.clock() + timedelta(seconds=params["delay"])
            row["last_error"] = params["last_error"]
        return []

    def _insert_job(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        retryable = params.get("retryable")
        row = {
            "queue": DEFAULT_QUEUE if params.get("queue") is None else params["queue"],
            "priority": DEFAULT_PRIORITY if params.get("priority") is None else params["priority"],
            "run_at": params.get("run_at") or self.clock(),
            "job_id": next(self._job_ids),
            "job_type": params["job_type"],
            "retryable": True if retryable is None else retryable,
            "args": copy.deepcopy(list(params.get("args") or [])),
            "error_count": 0,
            "last_error": None,
        }
        self.rows[row["job_id"]] = row
        return [copy.deepcopy(row)]

    def _destroy_job(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        if self._find(params) is not None:
            del self.rows[params["job_id"]]
        return []

    def _job_stats(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        groups: dict[tuple[str, str], list[Row]] = {}
        for row in self.rows.values():
            groups.setdefault((row["queue"], row["job_type"]), []).append(row)

        stats = [
            {
                "queue": queue,
                "job_type": job_type,
                "count": len(rows),
                "count_working": sum(1 for row in rows if row["job_id"] in self._locks),
                "count_errored": sum(1 for row in rows if row["error_count"] > 0),
                "highest_error_count": max(row["error_count"] for row in rows),
                "oldest_run_at": min(row["run_at"] for row in rows),
            }
            for (queue, job_type), rows in groups.items()
        ]
        return sorted(stats, key=lambda stat: stat["count"], reverse=True)

    def _try_lock_statement(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        return [{"locked": self._acquire(session, params["job_id"])}]

    def _unlock_statement(self, session: MemorySession, params: Mapping[str, Any]) -> list[Row]:
        return [{"unlocked": self._release(session, params["job_id"])}]
