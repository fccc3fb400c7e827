"""Storage module: key-value contract, backends and backup persistence."""

from typing import Optional

from ..config.settings import StorageSettings
from .interface import KeyValueStore
from .memory import MemoryKeyValueStore
from .repository import BackupRepository, StoredBackup
from .sqlite import DatabaseManager, SqliteKeyValueStore
from .types import (
    BackupMetadata,
    BatchProgress,
    FullScanState,
    ListResult,
    SitemapState,
    StorageError,
    StoreError,
)


async def open_store(settings: Optional[StorageSettings] = None) -> KeyValueStore:
    """Open the store named by ``settings.url`` (``memory://`` or SQLite)."""
    if settings is None:
        from ..config import get_settings

        settings = get_settings().storage

    if settings.url.startswith("memory:"):
        return MemoryKeyValueStore()
    return await SqliteKeyValueStore.open(settings)


__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "DatabaseManager",
    "BackupRepository",
    "StoredBackup",
    "open_store",
    "StorageError",
    "StoreError",
    "ListResult",
    "BackupMetadata",
    "BatchProgress",
    "FullScanState",
    "SitemapState",
]
