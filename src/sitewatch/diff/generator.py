"""Diff generation with option handling, truncation and a short-lived cache."""

import math
import time
from collections.abc import Callable
from typing import Optional

from pydantic import ValidationError

from ..config.settings import DiffSettings
from ..storage import keys
from ..storage.interface import KeyValueStore
from ..storage.repository import BackupRepository
from ..storage.types import StorageError
from ..utils.async_utils import AsyncBatch
from ..utils.logging import get_structured_logger
from .classifier import classify_changes
from .types import (
    DetailedDiff,
    DiffCacheEntry,
    DiffCacheStats,
    DiffComparison,
    DiffOptions,
    UrlHistoryEntry,
)

logger = get_structured_logger(__name__)


def limit_changes(
    diff: DetailedDiff,
    max_changes: int,
    split: tuple[float, float, float] = (0.6, 0.2, 0.2),
) -> DetailedDiff:
    """Keep the highest-priority changes of each category.

    Each category is sorted by priority (stable for ties) and cut to
    ``floor(max_changes * share)``. Returns a new diff.
    """
    limited = diff.model_copy(deep=True)
    classification = limited.classification
    content_share, style_share, structure_share = split

    def top(changes, share):
        ordered = sorted(changes, key=lambda change: change.priority, reverse=True)
        return ordered[: math.floor(max_changes * share)]

    classification.content = top(classification.content, content_share)
    classification.style = top(classification.style, style_share)
    classification.structure = top(classification.structure, structure_share)
    limited.refresh_summary()
    return limited


class DiffGenerator:
    """Produces DetailedDiffs for stored page versions."""

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[DiffSettings] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.settings = settings or DiffSettings()
        self.repository = BackupRepository(store)
        self._clock = clock or time.time

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def generate_diff(
        self,
        site_id: str,
        date: str,
        url: str,
        previous_content: str,
        current_content: str,
        previous_hash: str,
        current_hash: str,
        options: Optional[DiffOptions] = None,
    ) -> DetailedDiff:
        options = options or DiffOptions()
        cache_key = keys.diff_key(site_id, date, url)

        if options.cache_enabled:
            cached = await self._get_cached(cache_key)
            if cached is not None:
                logger.debug("Using cached diff", url=url)
                return cached

        started = time.monotonic()
        partial = False
        size = max(len(previous_content), len(current_content))
        if options.progressive_load and size > self.settings.partial_threshold:
            chunk = self.settings.partial_chunk_size
            logger.info("Comparing document prefixes only", url=url, size=size, chunk=chunk)
            previous_content = previous_content[:chunk]
            current_content = current_content[:chunk]
            partial = True

        diff = classify_changes(
            url,
            previous_content,
            current_content,
            previous_hash,
            current_hash,
            date,
            max_words=self.settings.max_displayed_words,
            snippet_length=self.settings.snippet_length,
        )

        if not options.include_content:
            diff.classification.content = []
        if not options.include_style:
            diff.classification.style = []
        if not options.include_structure:
            diff.classification.structure = []
        diff.refresh_summary()

        if options.max_changes is not None and diff.summary.total_changes > options.max_changes:
            diff = limit_changes(diff, options.max_changes, self.settings.limit_split)
            partial = True

        diff.metadata.is_partial = partial
        diff.metadata.cache_key = cache_key
        diff.metadata.generation_time = int((time.monotonic() - started) * 1000)

        if options.cache_enabled:
            await self._cache_diff(cache_key, diff)
        return diff

    async def generate_batch_diffs(
        self,
        site_id: str,
        date: str,
        comparisons: list[DiffComparison],
        options: Optional[DiffOptions] = None,
    ) -> dict[str, DetailedDiff]:
        """Diff many URLs, a few at a time."""

        async def one(comparison: DiffComparison) -> DetailedDiff:
            return await self.generate_diff(
                site_id,
                date,
                comparison.url,
                comparison.previous_content,
                comparison.current_content,
                comparison.previous_hash,
                comparison.current_hash,
                options,
            )

        outcomes = await AsyncBatch(self.settings.batch_size).process(comparisons, one)

        diffs = {}
        for comparison, outcome in zip(comparisons, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Diff generation failed", url=comparison.url, error=str(outcome))
                continue
            diffs[comparison.url] = outcome
        return diffs

    async def diff_latest(
        self, site_id: str, url: str, options: Optional[DiffOptions] = None
    ) -> Optional[DetailedDiff]:
        """Diff the backup ``latest`` points at against the one it replaced."""
        current_meta = await self.repository.get_latest(site_id, url)
        previous_meta = await self.repository.get_previous_latest(site_id, url)
        if current_meta is None or previous_meta is None:
            return None

        current = await self.repository.get_backup_for(site_id, current_meta)
        previous = await self.repository.get_backup_for(site_id, previous_meta)
        if current is None or previous is None:
            logger.warning("Backup content missing for diff", site_id=site_id, url=url)
            return None

        return await self.generate_diff(
            site_id,
            current.date,
            url,
            previous.content,
            current.content,
            previous_meta.comparable_hash,
            current_meta.comparable_hash,
            options,
        )

    async def compare_dates(
        self, site_id: str, url: str, date1: str, date2: str
    ) -> Optional[DetailedDiff]:
        """Classify changes between the backups of two dates (uncached)."""
        first = await self.repository.get_backup(site_id, date1, url)
        second = await self.repository.get_backup(site_id, date2, url)
        if first is None or second is None:
            return None

        return classify_changes(
            url,
            first.content,
            second.content,
            first.metadata.comparable_hash,
            second.metadata.comparable_hash,
            date2,
            max_words=self.settings.max_displayed_words,
            snippet_length=self.settings.snippet_length,
        )

    async def get_url_history(
        self, site_id: str, url: str, max_days: int = 30
    ) -> list[UrlHistoryEntry]:
        """Dated hashes for ``url`` within ``max_days``, newest first.

        An entry is flagged when its hash differs from the previous backup.
        """
        cutoff = keys.days_ago(max_days - 1)
        backups = [
            backup
            for backup in await self.repository.get_backup_history(site_id, url, limit=max_days)
            if backup.date >= cutoff
        ]

        history = []
        previous_hash = None
        for backup in reversed(backups):
            current_hash = backup.metadata.comparable_hash
            history.append(
                UrlHistoryEntry(
                    date=backup.date,
                    hash=current_hash,
                    has_changes=previous_hash is not None and previous_hash != current_hash,
                )
            )
            previous_hash = current_hash

        history.reverse()
        return history

    async def clear_cache(self, site_id: Optional[str] = None) -> int:
        prefix = f"diff:{site_id}:" if site_id else "diff:"
        cleared = 0
        try:
            doomed = [key async for key in self.store.iter_keys(prefix)]
            for key in doomed:
                await self.store.delete(key)
                cleared += 1
        except StorageError as e:
            logger.error("Failed to clear diff cache", error=str(e))

        logger.info("Cleared diff cache", site_id=site_id, entries=cleared)
        return cleared

    async def get_cache_stats(self) -> DiffCacheStats:
        stats = DiffCacheStats()
        try:
            async for key in self.store.iter_keys("diff:"):
                value = await self.store.get(key)
                if value is not None:
                    stats.total_entries += 1
                    stats.total_size += len(value.encode("utf-8"))
        except StorageError as e:
            logger.error("Failed to read diff cache stats", error=str(e))
        return stats

    async def _get_cached(self, cache_key: str) -> Optional[DetailedDiff]:
        try:
            raw = await self.store.get(cache_key)
            if raw is None:
                return None

            try:
                entry = DiffCacheEntry.model_validate_json(raw)
            except ValidationError as e:
                logger.warning("Discarding unreadable cached diff", key=cache_key, error=str(e))
                return None

            if self._now_ms() > entry.expires_at:
                await self.store.delete(cache_key)
                return None
            return entry.diff
        except StorageError as e:
            logger.error("Failed to read cached diff", key=cache_key, error=str(e))
            return None

    async def _cache_diff(self, cache_key: str, diff: DetailedDiff) -> None:
        entry = DiffCacheEntry(
            key=cache_key,
            diff=diff,
            expires_at=self._now_ms() + self.settings.cache_ttl * 1000,
        )
        serialized = entry.model_dump_json(by_alias=True)

        size = len(serialized.encode("utf-8"))
        if size > self.settings.max_cache_bytes:
            logger.info("Diff too large to cache", key=cache_key, size=size)
            return

        try:
            await self.store.put(cache_key, serialized, ttl=self.settings.cache_ttl)
        except StorageError as e:
            logger.error("Failed to cache diff", key=cache_key, error=str(e))
