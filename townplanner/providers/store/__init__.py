"""Record store adapters: SQLite (aiosqlite) for the CLI, in-memory for tests."""

from townplanner.providers.store.memory_store import MemoryStoreProvider
from townplanner.providers.store.sqlite_store import SQLiteStoreProvider

__all__ = ["MemoryStoreProvider", "SQLiteStoreProvider"]
