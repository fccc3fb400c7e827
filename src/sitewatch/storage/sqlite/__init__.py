"""SQLite persistence for the key-value store."""

from .database import DatabaseManager
from .models import Base, KeyValueEntry
from .store import SqliteKeyValueStore

__all__ = ["DatabaseManager", "Base", "KeyValueEntry", "SqliteKeyValueStore"]
