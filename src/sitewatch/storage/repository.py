"""Backup persistence on top of the key-value store."""

from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from ..utils.logging import get_structured_logger
from . import keys
from .interface import KeyValueStore
from .types import BackupMetadata

logger = get_structured_logger(__name__)


@dataclass
class StoredBackup:
    """A dated page snapshot."""

    date: str
    content: str
    metadata: BackupMetadata


@dataclass
class StorageStats:
    total_backups: int
    oldest_backup: Optional[str]
    newest_backup: Optional[str]


class BackupRepository:
    """Reads and writes dated backups plus the latest/prev_latest pointers."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def store_backup(
        self,
        site_id: str,
        date: str,
        content: str,
        metadata: BackupMetadata,
        previous: Optional[BackupMetadata] = None,
    ) -> None:
        """Persist one fetched page.

        ``previous`` is the latest record read before this fetch; it is moved
        to ``prev_latest`` before ``latest`` is overwritten. Raises
        StoreError on the first failed write.
        """
        url = metadata.url
        if previous is not None:
            await self.store.put(keys.prev_latest_key(site_id, url), previous.to_json())

        serialized = metadata.to_json()
        await self.store.put(keys.backup_key(site_id, date, url), content)
        await self.store.put(keys.meta_key(site_id, date, url), serialized)
        await self.store.put(keys.latest_key(site_id, url), serialized)

    async def _read_metadata(self, key: str) -> Optional[BackupMetadata]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return BackupMetadata.from_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable metadata", key=key, error=str(e))
            return None

    async def get_latest(self, site_id: str, url: str) -> Optional[BackupMetadata]:
        return await self._read_metadata(keys.latest_key(site_id, url))

    async def get_previous_latest(
        self, site_id: str, url: str
    ) -> Optional[BackupMetadata]:
        return await self._read_metadata(keys.prev_latest_key(site_id, url))

    async def get_metadata(
        self, site_id: str, date: str, url: str
    ) -> Optional[BackupMetadata]:
        return await self._read_metadata(keys.meta_key(site_id, date, url))

    async def get_backup(
        self, site_id: str, date: str, url: str
    ) -> Optional[StoredBackup]:
        content = await self.store.get(keys.backup_key(site_id, date, url))
        metadata = await self.get_metadata(site_id, date, url)
        if content is None or metadata is None:
            return None
        return StoredBackup(date=date, content=content, metadata=metadata)

    async def get_backup_for(
        self, site_id: str, metadata: BackupMetadata
    ) -> Optional[StoredBackup]:
        """Load the dated backup a latest/prev_latest record points at."""
        date = metadata.timestamp.split("T")[0]
        return await self.get_backup(site_id, date, metadata.url)

    async def get_backup_history(
        self, site_id: str, url: str, limit: int = 30
    ) -> list[StoredBackup]:
        """Dated metadata for ``url``, newest first. Content is left empty."""
        suffix = f":{keys.url_hash(url)}"
        history = []
        async for key in self.store.iter_keys(f"meta:{site_id}:"):
            if not key.endswith(suffix):
                continue
            metadata = await self._read_metadata(key)
            if metadata is not None:
                history.append(
                    StoredBackup(date=keys.date_from_key(key), content="", metadata=metadata)
                )

        history.sort(key=lambda entry: entry.date, reverse=True)
        return history[:limit]

    async def delete_backups_before(self, site_id: str, cutoff_date: str) -> int:
        """Delete dated content and metadata strictly older than ``cutoff_date``.

        Only ``backup:`` and ``meta:`` keys are considered; latest pointers,
        progress and cache keys are never touched.
        """
        doomed: dict[str, None] = {}
        async for key in self.store.iter_keys(f"backup:{site_id}:"):
            date = keys.date_from_key(key)
            if date is not None and date < cutoff_date:
                doomed[key] = None
                doomed["meta:" + key[len("backup:") :]] = None

        async for key in self.store.iter_keys(f"meta:{site_id}:"):
            date = keys.date_from_key(key)
            if date is not None and date < cutoff_date:
                doomed.setdefault(key, None)

        for key in doomed:
            await self.store.delete(key)

        if doomed:
            logger.info(
                "Deleted expired backups",
                site_id=site_id,
                cutoff=cutoff_date,
                keys=len(doomed),
            )
        return len(doomed)

    async def get_storage_stats(self, site_id: str) -> StorageStats:
        dates = []
        async for key in self.store.iter_keys(f"backup:{site_id}:"):
            date = keys.date_from_key(key)
            if date is not None:
                dates.append(date)

        unique_dates = sorted(set(dates))
        return StorageStats(
            total_backups=len(dates),
            oldest_backup=unique_dates[0] if unique_dates else None,
            newest_backup=unique_dates[-1] if unique_dates else None,
        )

    async def list_all_urls(self, site_id: str) -> list[str]:
        """Every URL with a latest record, sorted."""
        urls = []
        async for key in self.store.iter_keys(f"latest:{site_id}:"):
            metadata = await self._read_metadata(key)
            if metadata is not None:
                urls.append(metadata.url)
        return sorted(urls)
