from pgjobs.infra.adapters.base import Adapter, Row
from pgjobs.infra.adapters.memory import MemoryAdapter
from pgjobs.infra.adapters.postgres import PostgresAdapter

__all__ = ["Adapter", "MemoryAdapter", "PostgresAdapter", "Row"]
