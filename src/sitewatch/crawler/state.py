"""Crawl bookkeeping records kept in the key-value store."""

import json
from typing import Optional

from pydantic import ValidationError

from ..config.settings import CrawlSettings
from ..storage import keys
from ..storage.interface import KeyValueStore
from ..storage.types import BatchProgress, FullScanState, SitemapState, StoredRecord
from ..utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

LISTENER_ENABLED = "1"


class CrawlState:
    """Typed access to progress, scan, sitemap, listener and URL-cache keys."""

    def __init__(self, store: KeyValueStore, settings: Optional[CrawlSettings] = None):
        self.store = store
        self.settings = settings or CrawlSettings()

    async def _read(self, key: str, model: type[StoredRecord]):
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return model.from_json(raw)
        except ValidationError as e:
            logger.warning("Ignoring corrupt state record", key=key, error=str(e))
            return None

    # Batch progress

    async def get_progress(self, site_id: str) -> Optional[BatchProgress]:
        return await self._read(keys.batch_progress_key(site_id), BatchProgress)

    async def save_progress(self, site_id: str, progress: BatchProgress) -> None:
        await self.store.put(
            keys.batch_progress_key(site_id),
            progress.to_json(),
            ttl=self.settings.progress_ttl,
        )

    async def clear_progress(self, site_id: str) -> None:
        await self.store.delete(keys.batch_progress_key(site_id))

    # Full scan

    async def get_full_scan(self, site_id: str) -> Optional[FullScanState]:
        return await self._read(keys.full_scan_key(site_id), FullScanState)

    async def save_full_scan(self, site_id: str, state: FullScanState) -> None:
        await self.store.put(
            keys.full_scan_key(site_id), state.to_json(), ttl=self.settings.full_scan_ttl
        )

    async def clear_full_scan(self, site_id: str) -> None:
        await self.store.delete(keys.full_scan_key(site_id))

    # Sitemap validators

    async def get_sitemap_state(self, site_id: str) -> Optional[SitemapState]:
        return await self._read(keys.sitemap_state_key(site_id), SitemapState)

    async def save_sitemap_state(self, site_id: str, state: SitemapState) -> None:
        await self.store.put(
            keys.sitemap_state_key(site_id),
            state.to_json(),
            ttl=self.settings.sitemap_state_ttl,
        )

    # Listener mode

    async def is_listener_enabled(self, site_id: str) -> bool:
        return await self.store.get(keys.listener_key(site_id)) == LISTENER_ENABLED

    async def enable_listener(self, site_id: str) -> None:
        await self.store.put(keys.listener_key(site_id), LISTENER_ENABLED)

    async def _read_url_list(self, key: str) -> Optional[list[str]]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            urls = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring corrupt sitemap snapshot", key=key)
            return None
        return [u for u in urls if isinstance(u, str)] if isinstance(urls, list) else None

    async def get_snapshot(self, site_id: str) -> Optional[list[str]]:
        return await self._read_url_list(keys.snapshot_key(site_id))

    async def save_snapshot(self, site_id: str, urls: list[str]) -> None:
        await self.store.put(keys.snapshot_key(site_id), json.dumps(urls))

    # The live URL set seen while new URLs are still being fetched; it
    # replaces the snapshot only once the cycle that fetches them completes.

    async def get_pending_snapshot(self, site_id: str) -> Optional[list[str]]:
        return await self._read_url_list(keys.pending_snapshot_key(site_id))

    async def save_pending_snapshot(self, site_id: str, urls: list[str]) -> None:
        await self.store.put(
            keys.pending_snapshot_key(site_id), json.dumps(urls), ttl=self.settings.progress_ttl
        )

    async def clear_pending_snapshot(self, site_id: str) -> None:
        await self.store.delete(keys.pending_snapshot_key(site_id))

    # URL-set cache

    async def save_url_cache(self, site_id: str, date: str, urls: list[str]) -> None:
        """Store ``urls`` in fixed-size chunks under the cycle's date."""
        size = self.settings.url_cache_chunk_size
        chunks = [urls[i : i + size] for i in range(0, len(urls), size)]
        ttl = self.settings.url_cache_ttl

        for index, chunk in enumerate(chunks):
            await self.store.put(
                keys.urls_cache_chunk_key(site_id, date, index), json.dumps(chunk), ttl=ttl
            )
        await self.store.put(
            keys.urls_cache_key(site_id, date),
            json.dumps({"chunkCount": len(chunks), "totalUrls": len(urls)}),
            ttl=ttl,
        )

    async def load_url_cache(self, site_id: str, date: str) -> Optional[list[str]]:
        """Return the cached URL list, or None when missing or incomplete."""
        raw = await self.store.get(keys.urls_cache_key(site_id, date))
        if raw is None:
            return None
        try:
            header = json.loads(raw)
            chunk_count = int(header["chunkCount"])
            total = int(header["totalUrls"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring corrupt URL cache header", site_id=site_id, date=date)
            return None

        urls: list[str] = []
        for index in range(chunk_count):
            chunk = await self.store.get(keys.urls_cache_chunk_key(site_id, date, index))
            if chunk is None:
                logger.warning("URL cache chunk missing", site_id=site_id, chunk=index)
                return None
            try:
                urls.extend(json.loads(chunk))
            except ValueError:
                logger.warning("Ignoring corrupt URL cache chunk", site_id=site_id, chunk=index)
                return None

        if len(urls) != total:
            logger.warning(
                "URL cache size mismatch", site_id=site_id, expected=total, actual=len(urls)
            )
            return None
        return urls

    async def delete_url_cache(self, site_id: str, date: Optional[str] = None) -> int:
        """Delete one cycle's cache, or every cache entry for the site."""
        prefix = (
            keys.urls_cache_key(site_id, date) if date else keys.urls_cache_prefix(site_id)
        )
        doomed = [key async for key in self.store.iter_keys(prefix)]
        for key in doomed:
            await self.store.delete(key)
        return len(doomed)
