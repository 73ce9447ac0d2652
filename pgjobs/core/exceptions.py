from typing import Any


class PgJobsError(Exception):
    """Base exception for pgjobs."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class StorageError(PgJobsError):
    """
    Raised when the store cannot be reached or a statement fails at the driver.

    Workers treat it as transient: the work loop sleeps and retries.
    """


class UnresolvedHandlerError(PgJobsError, LookupError):
    """Raised when a job type has no registered handler."""

    def __init__(self, job_type: str):
        super().__init__(
            f"No handler registered for job type: {job_type}",
            {"job_type": job_type},
        )
        self.job_type = job_type


class JobTimeoutError(PgJobsError):
    """
    Recorded against a job whose worker was forcibly interrupted because it
    did not finish within the pool's shutdown grace period.
    """

    def __init__(self, message: str = "Job exceeded timeout when requested to stop"):
        super().__init__(message)
