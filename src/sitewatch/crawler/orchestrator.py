"""Bounded, resumable batch crawling of one site per invocation."""

import re
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional, Union

from ..config.settings import AppSettings, CrawlSettings
from ..config.types import SiteConfig
from ..storage import keys
from ..storage.interface import KeyValueStore
from ..storage.repository import BackupRepository
from ..storage.types import BackupMetadata, BatchProgress, FullScanState, StorageError
from ..utils.async_utils import AsyncBatch, AsyncContextManager
from ..utils.logging import bind_site_context, clear_site_context, get_structured_logger
from .detector import ChangeDetector
from .fetcher import HttpFetcher
from .normalizer import ContentHasher, ContentNormalizer
from .sitemap import SitemapResolver, unique_urls
from .state import CrawlState
from .types import (
    BackupFailure,
    BackupResult,
    BackupSuccess,
    BatchedResult,
    BatchOptions,
    BatchProgressInfo,
    FetchError,
)

logger = get_structured_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compile_exclusions(patterns: list[str]) -> list[re.Pattern]:
    """Compile exclusion regexes case-insensitively, skipping invalid ones."""
    compiled = []
    for source in patterns:
        try:
            compiled.append(re.compile(source, re.IGNORECASE))
        except re.error as e:
            logger.warning("Skipping invalid exclude pattern", pattern=source, error=str(e))
    return compiled


def percent_complete(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    return round(completed / total * 100)


class BatchCrawlOrchestrator(AsyncContextManager):
    """Runs one bounded batch of a site's crawl cycle per call.

    A cycle starts at offset 0 with a fresh URL set and advances through
    ``perform_batch`` calls until every URL has been visited; progress and the
    cycle's URL set live in the store between calls. Once a cycle completes,
    later calls on the same UTC day only re-check the sitemap.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[Union[AppSettings, CrawlSettings]] = None,
        fetcher: Optional[HttpFetcher] = None,
        normalizer: Optional[ContentNormalizer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if isinstance(settings, AppSettings):
            self.settings = settings.crawl
            hash_algorithm = settings.hash_algorithm
        else:
            self.settings = settings or CrawlSettings()
            hash_algorithm = "sha256"

        self.store = store
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher or HttpFetcher(
            user_agent=self.settings.user_agent,
            max_redirects=self.settings.max_redirects,
            backoff_base=self.settings.backoff_base,
        )
        self.normalizer = normalizer or ContentNormalizer(ContentHasher(hash_algorithm))
        self.hasher = self.normalizer.hasher
        self.clock = clock or _utcnow

        self.state = CrawlState(store, self.settings)
        self.repository = BackupRepository(store)
        self.detector = ChangeDetector()
        self.resolver = SitemapResolver(
            self.fetcher,
            self.state,
            timeout=self.settings.sitemap_timeout,
            max_depth=self.settings.sitemap_max_depth,
        )

    async def cleanup(self) -> None:
        if self._owns_fetcher:
            await self.fetcher.cleanup()

    def clamp_batch_size(self, requested: Optional[int]) -> int:
        size = self.settings.default_batch_size if requested is None else requested
        return max(1, min(size, self.settings.max_batch_size))

    async def perform_batch(
        self, site: SiteConfig, options: Optional[BatchOptions] = None
    ) -> BatchedResult:
        """Process the next batch of ``site``. Never raises."""
        options = options or BatchOptions()
        batch_size = self.clamp_batch_size(options.batch_size)
        started = time.monotonic()

        bind_site_context(site.id)
        try:
            result = await self._perform_batch(site, options, batch_size)
        except Exception as e:
            logger.exception("Batch crawl failed", error=str(e))
            result = BatchedResult(
                site_id=site.id,
                batch_offset=options.batch_offset,
                batch_size=batch_size,
                errors=[f"Batch crawl failed: {e}"],
            )
        finally:
            clear_site_context()

        result.execution_time = int((time.monotonic() - started) * 1000)
        return result

    async def _perform_batch(
        self, site: SiteConfig, options: BatchOptions, batch_size: int
    ) -> BatchedResult:
        now = self.clock()
        today = keys.utc_date(now)
        offset = max(0, options.batch_offset)
        cache_date = today

        progress = None
        if options.continue_from_last:
            progress = await self.state.get_progress(site.id)
            if progress is not None:
                offset = progress.next_offset
                cache_date = progress.urls_cache_date or today
                logger.info("Resuming crawl cycle", offset=offset, total=progress.total_urls)

        prefetched = None
        if progress is None and offset == 0:
            full_scan = await self.state.get_full_scan(site.id)
            if full_scan is not None and full_scan.date == today:
                if not site.uses_sitemap:
                    logger.info("Full scan already completed today")
                    return self._noop_result(site, batch_size)

                check = await self.resolver.check_changed(site.id, site.sitemap_url)
                if not check.changed:
                    logger.info("Sitemap unchanged since today's full scan", reason=check.reason)
                    return self._noop_result(site, batch_size)
                prefetched = check.body

        urls = None
        listener_mode = False
        live_urls = None
        state_errors: list[str] = []
        if offset > 0:
            urls = await self.state.load_url_cache(site.id, cache_date)
            if urls is None:
                logger.info("URL cache unavailable, resolving afresh", date=cache_date)

        fresh = urls is None
        if fresh:
            cache_date = today
            urls, errors = await self._resolve_urls(site, prefetched)
            if not urls and errors:
                return BatchedResult(
                    site_id=site.id,
                    batch_offset=offset,
                    batch_size=batch_size,
                    errors=errors,
                )
            urls, listener_mode, live_urls = await self._apply_listener(site, urls, state_errors)

        if offset > 0 and offset >= len(urls):
            if progress is None:
                logger.warning("Batch offset past the URL set", offset=offset, total=len(urls))
                return BatchedResult(
                    site_id=site.id,
                    total_urls=len(urls),
                    batch_offset=offset,
                    batch_size=batch_size,
                    errors=[
                        f"Batch offset {offset} is beyond the {len(urls)} URLs of site {site.id}"
                    ],
                    progress=BatchProgressInfo(completed=0, total=len(urls), percent_complete=0),
                )
            logger.warning(
                "Saved offset past the URL set, restarting cycle", offset=offset, total=len(urls)
            )
            offset = 0

        if fresh and offset + batch_size < len(urls):
            await self._guard(state_errors, self.state.save_url_cache(site.id, cache_date, urls))

        result = await self._process_slice(
            site, urls, offset, batch_size, now, cache_date, listener_mode, live_urls
        )
        result.errors[:0] = state_errors
        return result

    async def _resolve_urls(
        self, site: SiteConfig, prefetched: Optional[str]
    ) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        if site.urls:
            raw_urls = list(site.urls)
        elif site.sitemap_url:
            resolution = await self.resolver.resolve(
                site.sitemap_url, site_id=site.id, prefetched=prefetched
            )
            if not resolution.ok:
                return [], resolution.errors
            for warning in resolution.warnings:
                logger.warning("Sitemap branch skipped", error=warning)
            raw_urls = resolution.urls
        else:
            raw_urls = [site.base_url]

        urls = unique_urls(raw_urls)
        patterns = (
            self.settings.default_exclude_patterns
            if site.exclude_patterns is None
            else site.exclude_patterns
        )
        exclusions = compile_exclusions(patterns)
        if exclusions:
            kept = [u for u in urls if not any(p.search(u) for p in exclusions)]
            if len(kept) != len(urls):
                logger.info("Excluded URLs", excluded=len(urls) - len(kept))
            urls = kept

        if not urls:
            errors.append(f"No URLs to crawl for site {site.id}")
        return urls, errors

    async def _apply_listener(
        self, site: SiteConfig, urls: list[str], state_errors: list[str]
    ) -> tuple[list[str], bool, Optional[list[str]]]:
        """Reduce large sitemaps to newly added URLs.

        Returns the processing set, whether listener mode was just enabled
        and, in listener mode, the live URL set that becomes the snapshot
        once the cycle completes.
        """
        if not site.uses_sitemap:
            return urls, False, None

        if await self.state.is_listener_enabled(site.id):
            known = set(await self.state.get_snapshot(site.id) or [])
            added = [u for u in urls if u not in known]
            logger.info("Listener mode", live=len(urls), added=len(added))
            if added:
                await self._guard(state_errors, self.state.save_pending_snapshot(site.id, urls))
            return added, False, urls

        if len(urls) > self.settings.listener_threshold:
            await self._guard(state_errors, self._enable_listener(site.id, urls))
            logger.info(
                "Enabled listener mode; existing URLs will not be backfilled",
                urls=len(urls),
                threshold=self.settings.listener_threshold,
            )
            return [], True, None

        return urls, False, None

    async def _enable_listener(self, site_id: str, urls: list[str]) -> None:
        await self.state.save_snapshot(site_id, urls)
        await self.state.enable_listener(site_id)

    async def _process_slice(
        self,
        site: SiteConfig,
        urls: list[str],
        offset: int,
        batch_size: int,
        now: datetime,
        cache_date: str,
        listener_mode: bool,
        live_urls: Optional[list[str]],
    ) -> BatchedResult:
        total = len(urls)
        batch = urls[offset : offset + batch_size]
        result = BatchedResult(
            site_id=site.id,
            total_urls=total,
            batch_offset=offset,
            batch_size=batch_size,
            listener_mode=listener_mode,
        )

        if batch:
            logger.info("Processing batch", offset=offset, size=len(batch), total=total)
            concurrency = min(site.fetch_options.concurrency, self.settings.max_concurrency)
            date = keys.utc_date(now)
            outcomes = await AsyncBatch(concurrency).process(
                batch, lambda url: self._backup_url(site, url, date, now)
            )
            for url, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    outcome = BackupFailure(url=url, error=str(outcome))
                self._tally(result, outcome)

        if offset == 0:
            await self._run_retention(site, now, result)

        next_offset = offset + len(batch)
        if next_offset < total:
            result.has_more = True
            result.next_offset = next_offset
            await self._guard(
                result.errors,
                self.state.save_progress(
                    site.id,
                    BatchProgress(
                        next_offset=next_offset,
                        total_urls=total,
                        last_run_time=now.isoformat(),
                        urls_cache_date=cache_date,
                    ),
                ),
            )
        else:
            await self._complete_cycle(site, total, now, result, live_urls)

        completed = min(next_offset, total)
        result.progress = BatchProgressInfo(
            completed=completed,
            total=total,
            percent_complete=percent_complete(completed, total),
        )

        logger.info(
            "Batch finished",
            processed=result.processed_in_batch,
            successful=result.successful_backups,
            failed=result.failed_backups,
            changed=len(result.changed_urls),
            has_more=result.has_more,
        )
        return result

    def _tally(self, result: BatchedResult, outcome: BackupResult) -> None:
        result.results.append(outcome)
        result.processed_in_batch += 1
        if isinstance(outcome, BackupFailure):
            result.failed_backups += 1
            result.errors.append(f"{outcome.url}: {outcome.error}")
            return

        result.successful_backups += 1
        if outcome.stored:
            result.stored_backups += 1
        else:
            result.store_failures += 1
            result.errors.append(f"{outcome.url}: {outcome.store_error}")
        if outcome.changed:
            result.changed_urls.append(outcome.url)

    async def _backup_url(
        self, site: SiteConfig, url: str, date: str, now: datetime
    ) -> BackupResult:
        try:
            fetched = await self.fetcher.fetch(
                url,
                timeout=site.fetch_options.timeout,
                retries=site.fetch_options.retries,
            )
        except FetchError as e:
            logger.warning("Fetch failed", url=url, error=e.message)
            return BackupFailure(url=url, error=e.message)

        normalized = self.normalizer.normalize(
            fetched.content, site.change_threshold.ignore_patterns
        )
        metadata = BackupMetadata(
            url=url,
            timestamp=now.isoformat(),
            content_hash=self.hasher.hash_content(fetched.content),
            normalized_hash=normalized.hash,
            status=fetched.status,
            content_type=fetched.content_type,
            etag=fetched.etag,
            size=fetched.size,
            fetch_time=fetched.fetch_time_ms,
            redirect_count=fetched.redirect_count,
            final_url=fetched.final_url,
            detected_type=normalized.content_type,
        )

        try:
            previous = await self.repository.get_latest(site.id, url)
            decision = self.detector.detect(
                metadata, previous, site.change_threshold.min_change_size
            )
            await self.repository.store_backup(
                site.id, date, fetched.content, metadata, previous=previous
            )
        except StorageError as e:
            logger.error("Storing backup failed", url=url, error=str(e))
            return BackupSuccess(
                url=url,
                metadata=metadata,
                content=fetched.content,
                stored=False,
                store_error=f"store failed: {e}",
            )

        if decision.changed:
            logger.debug("Change detected", url=url, reason=decision.reason)
        return BackupSuccess(
            url=url,
            metadata=metadata,
            content=fetched.content,
            changed=decision.changed,
        )

    async def _run_retention(
        self, site: SiteConfig, now: datetime, result: BatchedResult
    ) -> None:
        cutoff = keys.days_ago(site.retention_days, now)
        try:
            await self.repository.delete_backups_before(site.id, cutoff)
        except StorageError as e:
            logger.warning("Retention cleanup failed", error=str(e))
            result.errors.append(f"Retention cleanup failed: {e}")

    async def _complete_cycle(
        self,
        site: SiteConfig,
        total: int,
        now: datetime,
        result: BatchedResult,
        live_urls: Optional[list[str]] = None,
    ) -> None:
        await self._guard(result.errors, self.state.clear_progress(site.id))
        await self._guard(result.errors, self.state.delete_url_cache(site.id))
        await self._guard(result.errors, self._promote_snapshot(site, live_urls))
        await self._guard(
            result.errors,
            self.state.save_full_scan(
                site.id,
                FullScanState(
                    date=keys.utc_date(now),
                    completed_at=now.isoformat(),
                    total_urls=total,
                ),
            ),
        )
        logger.info("Crawl cycle complete", total=total)

    async def _promote_snapshot(self, site: SiteConfig, live_urls: Optional[list[str]]) -> None:
        """Make the live URL set of a finished listener cycle the new snapshot."""
        if live_urls is None:
            if not site.uses_sitemap or not await self.state.is_listener_enabled(site.id):
                return
            live_urls = await self.state.get_pending_snapshot(site.id)
            if live_urls is None:
                return
        await self.state.save_snapshot(site.id, live_urls)
        await self.state.clear_pending_snapshot(site.id)

    async def _guard(self, errors: list[str], operation) -> None:
        """Await a state write, recording a store failure instead of raising."""
        try:
            await operation
        except StorageError as e:
            logger.error("Crawl state update failed", error=str(e))
            errors.append(f"State update failed: {e}")

    def _noop_result(self, site: SiteConfig, batch_size: int) -> BatchedResult:
        return BatchedResult(
            site_id=site.id,
            batch_size=batch_size,
            skipped=True,
            progress=BatchProgressInfo(completed=0, total=0, percent_complete=100),
        )

    async def reset_progress(self, site_id: str) -> list[str]:
        """Forget the current cycle: progress, full scan and every URL cache."""
        errors = []
        for label, operation in (
            ("batch progress", lambda: self.state.clear_progress(site_id)),
            ("full scan", lambda: self.state.clear_full_scan(site_id)),
            ("URL cache", lambda: self.state.delete_url_cache(site_id)),
            ("pending snapshot", lambda: self.state.clear_pending_snapshot(site_id)),
        ):
            try:
                await operation()
            except StorageError as e:
                errors.append(f"Failed to clear {label}: {e}")

        if errors:
            logger.warning("Progress reset incomplete", site_id=site_id, errors=errors)
        else:
            logger.info("Progress reset", site_id=site_id)
        return errors

    async def get_batch_progress(self, site_id: str) -> Optional[BatchProgress]:
        return await self.state.get_progress(site_id)
