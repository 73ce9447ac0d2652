"""
Job table model.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    Index,
    Integer,
    SmallInteger,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from pgjobs.infra.database import Base

JOBS_TABLE = "pgjobs_jobs"


class JobRow(Base):
    """
    Persisted job.

    A row lives from enqueue until a worker deletes it after a successful run.
    Failed runs leave it in place with a bumped error_count and a later run_at.
    Workers select rows in (priority, run_at, job_id) order and claim them with
    session-level advisory locks keyed by job_id, so there is no status column.
    """

    __tablename__ = JOBS_TABLE

    queue: Mapped[str] = mapped_column(
        Text, nullable=False, server_default="", comment="Logical queue, '' is the default"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        server_default=text("100"),
        comment="Lower is more urgent",
    )
    run_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Earliest time to run job",
    )
    job_id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
        comment="Identity and advisory lock key",
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Handler registry key"
    )
    retryable: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
        comment="Only retryable jobs are eligible for locking",
    )
    args: Mapped[list[Any]] = mapped_column(
        JSON,
        nullable=False,
        server_default=text("'[]'::json"),
        comment="Positional handler arguments",
    )
    error_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0"), comment="Failed runs"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Most recent failure with traceback"
    )

    __table_args__ = (
        Index(
            "pgjobs_jobs_poll_idx",
            "queue",
            "retryable",
            "priority",
            "run_at",
            "job_id",
        ),
    )
