from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar

from pgjobs.core.exceptions import UnresolvedHandlerError

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """
    Protocol for job handlers, one per job type.

    Handlers may also define:

    - ``handle_failure(error, job)``: called (sync or async) after a failure
      has been recorded against the job. Its own errors are discarded.
    - ``retry_interval``: seconds before a failed job is retried, either a
      number or a callable receiving the new error count. Defaults to
      ``count ** 4 + 3``.
    """

    async def run(self, ctx: Any, *args: Any) -> None:
        """
        Run a job.

        Args:
            ctx: JobContext for the job, exposing the job record, the worker's
                storage adapter and the cooperative stop flag
            *args: The job's JSON arguments
        """
        ...


class HandlerRegistry(Registry[JobHandler]):
    """Registry mapping job types to handlers, populated at process startup."""

    def __init__(self):
        super().__init__("Handler")

    def resolve(self, job_type: str) -> JobHandler:
        """Look up the handler for a job type, failing with a typed error."""
        try:
            return self.get(job_type)
        except KeyError:
            raise UnresolvedHandlerError(job_type) from None

    def handler(self, name: str) -> Callable[[type], type]:
        """Class decorator registering an instance of the decorated handler."""

        def decorator(cls: type) -> type:
            self.register(name, cls())
            return cls

        return decorator
