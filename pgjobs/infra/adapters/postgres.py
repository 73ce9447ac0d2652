"""
Postgres adapter on a SQLAlchemy async engine (asyncpg driver).
"""

import json
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from pgjobs.config.logging import get_logger
from pgjobs.core.exceptions import StorageError
from pgjobs.infra.adapters.base import Adapter, Row
from pgjobs.infra.sql import SQL

logger = get_logger(__name__)

# Failures that mean "the store is unreachable or refused the statement"
CONNECTION_ERRORS = (DBAPIError, PoolTimeoutError, OSError)


class PostgresAdapter(Adapter):
    """
    Runs statements on a connection checked out from the engine's pool.

    Statements outside ``transaction()`` are committed as soon as they run.
    Session-level advisory locks are unaffected by those commits and stay
    held until unlocked or the connection closes.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._connection: ContextVar[AsyncConnection | None] = ContextVar(
            f"pgjobs_connection_{id(self)}", default=None
        )
        self._transaction_depth: ContextVar[int] = ContextVar(
            f"pgjobs_transaction_depth_{id(self)}", default=0
        )

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[AsyncConnection]:
        current = self._connection.get()
        if current is not None:
            yield current
            return

        try:
            conn = await self.engine.connect()
        except CONNECTION_ERRORS as exc:
            raise StorageError(
                "Could not check out a Postgres connection", {"error": str(exc)}
            ) from exc

        token = self._connection.set(conn)
        try:
            yield conn
        finally:
            self._connection.reset(token)
            await conn.close()

    async def execute(
        self, command: str, params: Mapping[str, Any] | None = None
    ) -> list[Row]:
        statement = SQL[command] if command in SQL else text(command)
        bound = {key: _encode(value) for key, value in (params or {}).items()}

        async with self.checkout() as conn:
            try:
                result = await conn.execute(statement, bound)
                rows = [dict(row) for row in result.mappings()] if result.returns_rows else []
                if not self._transaction_depth.get():
                    await conn.commit()
            except CONNECTION_ERRORS as exc:
                if not self._transaction_depth.get():
                    await self._rollback(conn)
                raise StorageError(
                    f"Postgres statement {command!r} failed",
                    {"error": str(exc)},
                ) from exc

        return rows

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self.checkout() as conn:
            depth = self._transaction_depth.get()
            token = self._transaction_depth.set(depth + 1)
            try:
                yield
            except BaseException:
                if depth == 0:
                    await self._rollback(conn)
                raise
            else:
                if depth == 0:
                    try:
                        await conn.commit()
                    except CONNECTION_ERRORS as exc:
                        raise StorageError(
                            "Postgres commit failed", {"error": str(exc)}
                        ) from exc
            finally:
                self._transaction_depth.reset(token)

    async def in_transaction(self) -> bool:
        return self._transaction_depth.get() > 0

    async def close(self) -> None:
        await self.engine.dispose()

    async def _rollback(self, conn: AsyncConnection) -> None:
        try:
            await conn.rollback()
        except CONNECTION_ERRORS:
            logger.warning("rollback_failed", msg="Could not roll back Postgres connection")


def _encode(value: Any) -> Any:
    # asyncpg wants JSON as text; timestamps and scalars go through untouched
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if isinstance(value, datetime) and value.tzinfo is None:
        raise ValueError("Naive datetimes are ambiguous, pass a timezone-aware value")
    return value
