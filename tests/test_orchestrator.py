"""Tests for the batch crawl orchestrator."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from helpers import SITEMAP_URL, FlakyStore, sitemap_index, urlset

from sitewatch.config import FetchOptions, SiteConfig
from sitewatch.config.settings import CrawlSettings
from sitewatch.crawler import BatchCrawlOrchestrator
from sitewatch.crawler.types import BatchOptions
from sitewatch.storage import BackupMetadata, BatchProgress, MemoryKeyValueStore, keys


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 2, 22, 2, 0, tzinfo=timezone.utc))


@pytest.fixture
def orchestrator(store, crawl_settings, fetcher, clock):
    return BatchCrawlOrchestrator(store, crawl_settings, fetcher=fetcher, clock=clock)


def is_sitemap(url: str) -> bool:
    return url.endswith(".xml")


def pages(count: int, prefix: str = "https://example.com/p") -> list[str]:
    return [f"{prefix}{i}" for i in range(count)]


class TestSitemapCrawl:
    """Sitemap-driven cycles, including cycles in the sitemap graph."""

    @pytest.mark.asyncio
    async def test_cyclic_sitemap_index_terminates(self, web, orchestrator, sitemap_site):
        child = "https://example.com/sitemap-b.xml"
        web.routes[SITEMAP_URL] = sitemap_index([child])
        web.routes[child] = sitemap_index([SITEMAP_URL])

        result = await orchestrator.perform_batch(sitemap_site, BatchOptions(batch_size=10))

        assert result.total_urls == 0
        assert result.processed_in_batch == 0
        assert result.errors
        assert len(web.calls_to(is_sitemap)) == 2

    @pytest.mark.asyncio
    async def test_small_sitemap_is_crawled_in_one_batch(
        self, web, store, orchestrator, sitemap_site
    ):
        web.routes[SITEMAP_URL] = urlset(["https://example.com/a", "https://example.com/b"])

        result = await orchestrator.perform_batch(sitemap_site, BatchOptions(batch_size=10))

        assert result.total_urls == 2
        assert result.processed_in_batch == 2
        assert result.successful_backups == 2
        assert result.stored_backups == 2
        assert sorted(result.changed_urls) == ["https://example.com/a", "https://example.com/b"]
        assert not result.has_more
        assert result.progress.percent_complete == 100

        full_scan = json.loads(await store.get(keys.full_scan_key("test-site")))
        assert full_scan["date"] == "2026-02-22"
        assert full_scan["totalUrls"] == 2
        assert await store.get(keys.batch_progress_key("test-site")) is None

    @pytest.mark.asyncio
    async def test_continuation_reuses_cached_url_set(self, web, store, orchestrator, sitemap_site):
        web.routes[SITEMAP_URL] = urlset(pages(3))

        first = await orchestrator.perform_batch(
            sitemap_site, BatchOptions(batch_size=2, continue_from_last=True)
        )
        assert first.has_more
        assert first.next_offset == 2
        assert first.progress.completed == 2
        assert first.progress.percent_complete == 67
        assert len(web.calls_to(is_sitemap)) == 1

        second = await orchestrator.perform_batch(
            sitemap_site, BatchOptions(batch_size=2, continue_from_last=True)
        )

        assert len(web.calls_to(is_sitemap)) == 1
        assert second.batch_offset == 2
        assert second.processed_in_batch == 1
        assert not second.has_more
        assert await store.get(keys.batch_progress_key("test-site")) is None
        assert [k async for k in store.iter_keys(keys.urls_cache_prefix("test-site"))] == []

    @pytest.mark.asyncio
    async def test_lastmod_churn_after_full_scan_is_a_noop(self, web, orchestrator, sitemap_site):
        urls = ["https://example.com/a", "https://example.com/b"]
        web.routes[SITEMAP_URL] = [
            urlset(urls, lastmod="2026-02-22T00:00:00Z"),
            urlset(urls, lastmod="2026-02-22T01:00:00Z"),
        ]

        first = await orchestrator.perform_batch(sitemap_site, BatchOptions(batch_size=10))
        assert first.processed_in_batch == 2

        second = await orchestrator.perform_batch(sitemap_site, BatchOptions(batch_size=10))

        assert second.skipped
        assert second.processed_in_batch == 0
        assert len(web.calls) == 4

    @pytest.mark.asyncio
    async def test_listener_mode_for_large_sitemaps(self, web, store, orchestrator, sitemap_site):
        live = pages(101)
        grown = live + ["https://example.com/new-page"]
        web.routes[SITEMAP_URL] = [urlset(live), urlset(live), urlset(grown)]

        first = await orchestrator.perform_batch(sitemap_site, BatchOptions(batch_size=25))

        assert len(web.calls) == 1
        assert first.listener_mode
        assert first.total_urls == 0
        assert await store.get(keys.listener_key("test-site")) == "1"
        assert len(json.loads(await store.get(keys.snapshot_key("test-site")))) == 101

        second = await orchestrator.perform_batch(sitemap_site, BatchOptions(batch_size=25))

        assert second.skipped
        assert len(web.calls) == 2

        third = await orchestrator.perform_batch(sitemap_site, BatchOptions(batch_size=25))

        assert third.total_urls == 1
        assert third.changed_urls == ["https://example.com/new-page"]
        assert web.calls[2:] == [SITEMAP_URL, "https://example.com/new-page"]
        assert len(json.loads(await store.get(keys.snapshot_key("test-site")))) == 102

    @pytest.mark.asyncio
    async def test_listener_keeps_new_urls_when_url_cache_write_fails(
        self, web, crawl_settings, fetcher, clock, sitemap_site
    ):
        store = FlakyStore("urls_cache:")
        orchestrator = BatchCrawlOrchestrator(store, crawl_settings, fetcher=fetcher, clock=clock)
        live = pages(101)
        added = pages(40, prefix="https://example.com/new")
        web.routes[SITEMAP_URL] = [urlset(live), urlset(live + added)]
        options = BatchOptions(batch_size=25, continue_from_last=True)

        await orchestrator.perform_batch(sitemap_site, options)
        second = await orchestrator.perform_batch(sitemap_site, options)

        assert second.processed_in_batch == 25
        assert second.has_more
        assert any(error.startswith("State update failed") for error in second.errors)
        assert not any(error.startswith("Batch crawl failed") for error in second.errors)
        assert len(json.loads(await store.get(keys.snapshot_key("test-site")))) == 101

        third = await orchestrator.perform_batch(sitemap_site, options)

        assert third.batch_offset == 25
        assert third.processed_in_batch == 15
        assert not third.has_more
        assert len(json.loads(await store.get(keys.snapshot_key("test-site")))) == 141
        assert await store.get(keys.pending_snapshot_key("test-site")) is None

        fourth = await orchestrator.perform_batch(sitemap_site, options)

        assert fourth.skipped
        new_fetches = web.calls_to(lambda url: "/new" in url)
        assert sorted(new_fetches) == sorted(added)

    @pytest.mark.asyncio
    async def test_snapshot_waits_for_the_cycle_that_fetches_new_urls(
        self, web, store, orchestrator, sitemap_site
    ):
        live = pages(101)
        added = pages(3, prefix="https://example.com/new")
        web.routes[SITEMAP_URL] = [urlset(live), urlset(live + added)]
        options = BatchOptions(batch_size=2, continue_from_last=True)

        await orchestrator.perform_batch(sitemap_site, options)
        first = await orchestrator.perform_batch(sitemap_site, options)

        assert first.processed_in_batch == 2
        assert len(json.loads(await store.get(keys.snapshot_key("test-site")))) == 101
        assert len(json.loads(await store.get(keys.pending_snapshot_key("test-site")))) == 104

        second = await orchestrator.perform_batch(sitemap_site, options)

        assert second.processed_in_batch == 1
        assert len(json.loads(await store.get(keys.snapshot_key("test-site")))) == 104
        assert await store.get(keys.pending_snapshot_key("test-site")) is None

    @pytest.mark.asyncio
    async def test_unreachable_sitemap_reports_error(self, web, orchestrator, sitemap_site):
        web.routes[SITEMAP_URL] = lambda request: httpx.Response(500)

        result = await orchestrator.perform_batch(sitemap_site)

        assert result.total_urls == 0
        assert result.progress.percent_complete == 0
        assert any("500" in error for error in result.errors)


class TestUrlListCrawl:
    """Explicit URL lists, batching and bookkeeping."""

    @pytest.mark.asyncio
    async def test_continuation_covers_every_url_once(self, web, orchestrator, url_list_site):
        options = BatchOptions(batch_size=2, continue_from_last=True)
        processed = []

        for _ in range(3):
            result = await orchestrator.perform_batch(url_list_site, options)
            processed.append(result.processed_in_batch)

        assert processed == [2, 2, 1]
        assert not result.has_more
        assert sorted(web.calls) == sorted(url_list_site.urls)

    @pytest.mark.asyncio
    async def test_completed_cycle_skips_for_the_rest_of_the_day(
        self, web, orchestrator, url_list_site, clock
    ):
        await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=10))
        assert len(web.calls) == 5

        again = await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=10))
        assert again.skipped
        assert len(web.calls) == 5

        clock.now += timedelta(days=1)
        next_day = await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=10))
        assert next_day.processed_in_batch == 5

    @pytest.mark.asyncio
    async def test_batch_size_is_clamped(self, orchestrator, url_list_site):
        assert orchestrator.clamp_batch_size(None) == 25
        assert orchestrator.clamp_batch_size(100) == 30
        assert orchestrator.clamp_batch_size(0) == 1

        result = await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=0))
        assert result.batch_size == 1
        assert result.processed_in_batch == 1

    @pytest.mark.asyncio
    async def test_explicit_offset_without_cache(self, web, orchestrator, url_list_site):
        result = await orchestrator.perform_batch(
            url_list_site, BatchOptions(batch_size=2, batch_offset=4)
        )

        assert result.batch_offset == 4
        assert web.calls == ["https://example.com/page4"]
        assert not result.has_more

    @pytest.mark.asyncio
    async def test_offset_past_the_url_set_is_an_error(
        self, web, store, orchestrator, url_list_site
    ):
        result = await orchestrator.perform_batch(
            url_list_site, BatchOptions(batch_size=2, batch_offset=100)
        )

        assert result.errors == ["Batch offset 100 is beyond the 5 URLs of site list-site"]
        assert result.processed_in_batch == 0
        assert result.progress.percent_complete == 0
        assert web.calls == []
        assert await store.get(keys.full_scan_key("list-site")) is None

        next_run = await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=10))

        assert not next_run.skipped
        assert next_run.processed_in_batch == 5

    @pytest.mark.asyncio
    async def test_stale_saved_offset_restarts_the_cycle(self, web, orchestrator, url_list_site):
        await orchestrator.state.save_progress(
            "list-site",
            BatchProgress(
                next_offset=7,
                total_urls=9,
                last_run_time="2026-02-22T01:00:00+00:00",
                urls_cache_date="2026-02-22",
            ),
        )

        result = await orchestrator.perform_batch(
            url_list_site, BatchOptions(batch_size=2, continue_from_last=True)
        )

        assert result.batch_offset == 0
        assert result.next_offset == 2
        assert web.calls == ["https://example.com/page0", "https://example.com/page1"]

    @pytest.mark.asyncio
    async def test_base_url_is_crawled_without_urls_or_sitemap(self, web, orchestrator):
        site = SiteConfig(id="bare", base_url="https://example.com/home")

        result = await orchestrator.perform_batch(site)

        assert result.total_urls == 1
        assert web.calls == ["https://example.com/home"]

    @pytest.mark.asyncio
    async def test_fetch_failures_are_counted(self, web, orchestrator, url_list_site):
        web.routes["https://example.com/page1"] = lambda request: httpx.Response(500)

        result = await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=10))

        assert result.processed_in_batch == 5
        assert result.failed_backups == 1
        assert result.successful_backups == 4
        assert any(error.startswith("https://example.com/page1") for error in result.errors)

    @pytest.mark.asyncio
    async def test_changes_detected_across_days(self, web, orchestrator, clock):
        url = "https://example.com/news"
        site = SiteConfig(id="news", base_url="https://example.com", urls=[url])
        web.routes[url] = [
            "<html><body><p>Monday Feb 23, 2026</p><p>Story one</p></body></html>",
            "<html><body><p>Tuesday Feb 24, 2026</p><p>Story one</p></body></html>",
            "<html><body><p>Tuesday Feb 24, 2026</p><p>Story two</p></body></html>",
        ]

        first = await orchestrator.perform_batch(site)
        assert first.changed_urls == [url]

        clock.now += timedelta(days=1)
        second = await orchestrator.perform_batch(site)
        assert second.changed_urls == []

        clock.now += timedelta(days=1)
        third = await orchestrator.perform_batch(site)
        assert third.changed_urls == [url]

        latest = await orchestrator.repository.get_latest("news", url)
        previous = await orchestrator.repository.get_previous_latest("news", url)
        assert latest.timestamp.startswith("2026-02-24")
        assert previous.timestamp.startswith("2026-02-23")


class TestExclusions:
    @pytest.mark.asyncio
    async def test_default_locale_exclusions(self, web, orchestrator):
        site = SiteConfig(
            id="loc",
            base_url="https://example.com",
            urls=["https://example.com/a", "https://example.com/fr/a", "https://example.com/DE/b"],
        )

        result = await orchestrator.perform_batch(site)

        assert result.total_urls == 1
        assert web.calls == ["https://example.com/a"]

    @pytest.mark.asyncio
    async def test_empty_exclusions_keep_everything(self, orchestrator):
        site = SiteConfig(
            id="loc",
            base_url="https://example.com",
            urls=["https://example.com/a", "https://example.com/fr/a"],
            exclude_patterns=[],
        )

        result = await orchestrator.perform_batch(site)

        assert result.total_urls == 2

    @pytest.mark.asyncio
    async def test_invalid_exclusion_is_skipped(self, orchestrator):
        site = SiteConfig(
            id="loc",
            base_url="https://example.com",
            urls=["https://example.com/a", "https://example.com/private/x"],
            exclude_patterns=["([", "/private/"],
        )

        result = await orchestrator.perform_batch(site)

        assert result.total_urls == 1

    @pytest.mark.asyncio
    async def test_everything_excluded_is_an_error(self, orchestrator):
        site = SiteConfig(
            id="loc",
            base_url="https://example.com",
            urls=["https://example.com/fr/a"],
        )

        result = await orchestrator.perform_batch(site)

        assert result.total_urls == 0
        assert result.errors == ["No URLs to crawl for site loc"]


class TestRetentionAndStorage:
    @pytest.mark.asyncio
    async def test_retention_runs_on_first_batch_only(self, store, orchestrator, url_list_site):
        url = "https://example.com/page0"
        old = BackupMetadata(url=url, timestamp="2026-01-01T00:00:00+00:00", content_hash="x")
        await orchestrator.repository.store_backup("list-site", "2026-01-01", "old", old)

        await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=2, batch_offset=2))
        assert await store.get(keys.backup_key("list-site", "2026-01-01", url)) == "old"

        await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=2))
        assert await store.get(keys.backup_key("list-site", "2026-01-01", url)) is None

    @pytest.mark.asyncio
    async def test_retention_runs_when_listener_finds_nothing_new(
        self, web, store, orchestrator, sitemap_site, clock
    ):
        web.routes[SITEMAP_URL] = urlset(pages(101))
        await orchestrator.perform_batch(sitemap_site)
        url = "https://example.com/p0"
        old = BackupMetadata(url=url, timestamp="2026-01-01T00:00:00+00:00", content_hash="x")
        await orchestrator.repository.store_backup("test-site", "2026-01-01", "old", old)

        clock.now += timedelta(days=1)
        result = await orchestrator.perform_batch(sitemap_site)

        assert result.total_urls == 0
        assert result.processed_in_batch == 0
        assert await store.get(keys.backup_key("test-site", "2026-01-01", url)) is None

    @pytest.mark.asyncio
    async def test_store_failures_are_reported_not_raised(
        self, crawl_settings, fetcher, clock, url_list_site
    ):
        orchestrator = BatchCrawlOrchestrator(
            FlakyStore("backup:"), crawl_settings, fetcher=fetcher, clock=clock
        )

        result = await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=3))

        assert result.processed_in_batch == 3
        assert result.successful_backups == 3
        assert result.stored_backups == 0
        assert result.store_failures == 3
        assert all(not r.stored for r in result.results)
        assert sum("store failed" in error for error in result.errors) == 3

    @pytest.mark.asyncio
    async def test_unexpected_errors_become_error_results(
        self, crawl_settings, fetcher, url_list_site
    ):
        class BrokenStore(MemoryKeyValueStore):
            async def get(self, key):
                raise RuntimeError("disk on fire")

        orchestrator = BatchCrawlOrchestrator(BrokenStore(), crawl_settings, fetcher=fetcher)

        result = await orchestrator.perform_batch(
            url_list_site, BatchOptions(continue_from_last=True)
        )

        assert result.errors == ["Batch crawl failed: disk on fire"]
        assert result.execution_time >= 0


class TestProgressManagement:
    @pytest.mark.asyncio
    async def test_get_batch_progress(self, orchestrator, url_list_site):
        assert await orchestrator.get_batch_progress("list-site") is None

        await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=2))
        progress = await orchestrator.get_batch_progress("list-site")

        assert progress.next_offset == 2
        assert progress.total_urls == 5
        assert progress.urls_cache_date == "2026-02-22"

    @pytest.mark.asyncio
    async def test_reset_progress_starts_a_new_cycle(self, web, store, orchestrator, url_list_site):
        await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=2))

        errors = await orchestrator.reset_progress("list-site")

        assert errors == []
        assert await store.get(keys.batch_progress_key("list-site")) is None
        assert await store.get(keys.full_scan_key("list-site")) is None
        assert [k async for k in store.iter_keys(keys.urls_cache_prefix("list-site"))] == []

        result = await orchestrator.perform_batch(
            url_list_site, BatchOptions(batch_size=2, continue_from_last=True)
        )
        assert result.batch_offset == 0

    @pytest.mark.asyncio
    async def test_reset_after_full_scan_allows_recrawl(self, web, orchestrator, url_list_site):
        await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=10))
        await orchestrator.reset_progress("list-site")

        result = await orchestrator.perform_batch(url_list_site, BatchOptions(batch_size=10))

        assert not result.skipped
        assert result.processed_in_batch == 5

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self, web, store, fetcher):
        settings = CrawlSettings(backoff_base=0, max_concurrency=2)
        orchestrator = BatchCrawlOrchestrator(store, settings, fetcher=fetcher)
        site = SiteConfig(
            id="wide",
            base_url="https://example.com",
            urls=pages(4),
            fetch_options=FetchOptions(concurrency=20),
        )

        result = await orchestrator.perform_batch(site)

        assert result.successful_backups == 4
