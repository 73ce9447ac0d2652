import threading

from pgjobs.infra.adapters.base import Adapter
from pgjobs.jobs.schemas import Job


class JobContext:
    """
    Handed to a handler alongside the job's arguments.

    Long-running handlers should check ``stop_requested`` between steps and
    return early when it is set; the job is then treated as worked. The flag is
    a threading.Event so handlers running in a thread can read it too.
    """

    def __init__(self, job: Job, adapter: Adapter):
        self.job = job
        self.adapter = adapter
        self._stop = threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()
