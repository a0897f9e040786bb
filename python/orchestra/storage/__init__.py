"""Task store implementations."""

from orchestra.storage.memory_store import InMemoryTaskStore
from orchestra.storage.sqlite_store import SQLiteTaskStore

__all__ = ["InMemoryTaskStore", "SQLiteTaskStore"]
