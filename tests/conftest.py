"""Test configuration and fixtures for the sitewatch test suite."""

import pytest
import pytest_asyncio
from helpers import SITEMAP_URL, FakeWeb

from sitewatch.config import FetchOptions, SiteConfig
from sitewatch.config.settings import CrawlSettings
from sitewatch.crawler import BatchCrawlOrchestrator, HttpFetcher
from sitewatch.storage import MemoryKeyValueStore


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")


@pytest.fixture
def store():
    """Fresh in-memory key-value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def web():
    """Scripted web server; tests add routes to ``web.routes``."""
    return FakeWeb()


@pytest.fixture
def crawl_settings():
    """Crawl settings with backoff sleeps disabled."""
    return CrawlSettings(backoff_base=0)


@pytest_asyncio.fixture
async def fetcher(web, crawl_settings):
    """HttpFetcher wired to the scripted web server."""
    client = web.client()
    fetcher = HttpFetcher(
        client=client,
        user_agent=crawl_settings.user_agent,
        max_redirects=crawl_settings.max_redirects,
        backoff_base=0,
    )
    yield fetcher
    await client.aclose()


@pytest.fixture
def orchestrator(store, crawl_settings, fetcher):
    return BatchCrawlOrchestrator(store, crawl_settings, fetcher=fetcher)


@pytest.fixture
def sitemap_site():
    """A sitemap-driven site."""
    return SiteConfig(
        id="test-site",
        name="Test Site",
        base_url="https://example.com",
        sitemap_url=SITEMAP_URL,
        retention_days=7,
        fetch_options=FetchOptions(timeout=10, retries=2, concurrency=3),
    )


@pytest.fixture
def url_list_site():
    """A site with an explicit URL list."""
    return SiteConfig(
        id="list-site",
        base_url="https://example.com",
        urls=[f"https://example.com/page{i}" for i in range(5)],
        fetch_options=FetchOptions(timeout=10, retries=0, concurrency=2),
    )
