"""Rallypoint storage layer."""

from rallypoint.storage.base import StorageBackend
from rallypoint.storage.sqlite_store import SQLiteStore

__all__ = ["SQLiteStore", "StorageBackend"]
