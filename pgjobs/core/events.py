"""
Job lifecycle events.

Every event is written to the structured log and handed to any registered
listeners (metrics collectors, tests, custom observers).
"""

from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from pgjobs.config.logging import get_logger


class JobEvent(str, Enum):
    """Job lifecycle event names."""

    JOB_ENQUEUED = "job_enqueued"
    JOB_BEGIN = "job_begin"
    JOB_WORKED = "job_worked"
    JOB_ERROR = "job_error"
    JOB_NOT_FOUND = "job_not_found"
    POSTGRES_ERROR = "postgres_error"


Listener = Callable[[JobEvent, Mapping[str, Any]], None]

_LEVELS = {
    JobEvent.JOB_ERROR: "error",
    JobEvent.POSTGRES_ERROR: "error",
    JobEvent.JOB_NOT_FOUND: "debug",
}


class EventLog:
    """Emits job events to structlog and to listeners."""

    def __init__(self, logger: Any = None, listeners: Iterable[Listener] = ()):
        self._logger = logger or get_logger("pgjobs.events")
        self._listeners: list[Listener] = list(listeners)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def emit(self, event: JobEvent, msg: str, **fields: Any) -> None:
        level = _LEVELS.get(event, "info")
        getattr(self._logger, level)(event.value, msg=msg, **fields)

        for listener in self._listeners:
            try:
                listener(event, fields)
            except Exception:
                self._logger.exception(
                    "event_listener_error",
                    msg="Event listener failed",
                    listener=repr(listener),
                    job_event=event.value,
                )
