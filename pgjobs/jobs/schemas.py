"""
Job schemas.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_QUEUE = ""
DEFAULT_PRIORITY = 100

SMALLINT_MIN = -32768
SMALLINT_MAX = 32767


class Job(BaseModel):
    """A job row as read from the store."""

    model_config = ConfigDict(frozen=True)

    queue: str
    priority: int
    run_at: datetime
    job_id: int
    job_type: str
    retryable: bool = True
    args: list[Any] = Field(default_factory=list)
    error_count: int = 0
    last_error: str | None = None

    # Seconds the job waited past run_at before it was locked
    latency: float | None = None

    @field_validator("args", mode="before")
    @classmethod
    def decode_args(cls, value: Any) -> Any:
        # asyncpg hands json columns back as text
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    @property
    def key(self) -> dict[str, Any]:
        """Columns identifying this exact version of the row."""
        return {
            "queue": self.queue,
            "priority": self.priority,
            "run_at": self.run_at,
            "job_id": self.job_id,
        }

    def log_fields(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "priority": self.priority,
            "job_type": self.job_type,
            "job_id": self.job_id,
            "error_count": self.error_count,
        }


class JobCreate(BaseModel):
    """Schema for enqueueing a new job."""

    job_type: str = Field(..., min_length=1, description="Handler registry key")
    args: list[Any] = Field(default_factory=list, description="Handler arguments")
    queue: str = Field(default=DEFAULT_QUEUE, description="Queue to place the job on")
    priority: int = Field(
        default=DEFAULT_PRIORITY,
        ge=SMALLINT_MIN,
        le=SMALLINT_MAX,
        description="Priority, lower is more urgent",
    )
    run_at: datetime | None = Field(
        default=None, description="Earliest time to run job, defaults to now"
    )
    retryable: bool = Field(default=True, description="Whether the job can be locked")

    @field_validator("run_at")
    @classmethod
    def require_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("run_at must be timezone-aware")
        return value

    def insert_params(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "priority": self.priority,
            "run_at": self.run_at,
            "job_type": self.job_type,
            "retryable": self.retryable,
            "args": self.args,
        }


class JobStats(BaseModel):
    """Per queue and job type summary of the jobs table."""

    queue: str
    job_type: str
    count: int
    count_working: int
    count_errored: int
    highest_error_count: int
    oldest_run_at: datetime
