"""Crawling module for the site backup monitor.

This module provides:
- HTTP fetching with retries and bounded manual redirects
- Cycle-safe sitemap resolution and the conditional sitemap probe
- Content normalization and hashing
- Change detection against the stored latest record
- The resumable batch crawl orchestrator
"""

from .detector import ChangeDecision, ChangeDetector
from .fetcher import HttpFetcher
from .normalizer import (
    ContentHasher,
    ContentNormalizer,
    NormalizedContent,
    detect_content_type,
    get_builtin_patterns,
)
from .orchestrator import BatchCrawlOrchestrator
from .sitemap import SitemapResolver, canonicalize_url, parse_sitemap, unique_urls
from .state import CrawlState
from .types import (
    BackupFailure,
    BackupResult,
    BackupSuccess,
    BatchedResult,
    BatchOptions,
    BatchProgressInfo,
    CrawlError,
    FetchError,
    FetchResult,
    NormalizationError,
    SitemapResolution,
    SitemapResolutionError,
)

__all__ = [
    # Types
    "CrawlError",
    "FetchError",
    "SitemapResolutionError",
    "NormalizationError",
    "FetchResult",
    "SitemapResolution",
    "BatchOptions",
    "BatchedResult",
    "BatchProgressInfo",
    "BackupResult",
    "BackupSuccess",
    "BackupFailure",
    # Fetching
    "HttpFetcher",
    # Sitemaps
    "SitemapResolver",
    "parse_sitemap",
    "canonicalize_url",
    "unique_urls",
    # Normalization
    "ContentHasher",
    "ContentNormalizer",
    "NormalizedContent",
    "detect_content_type",
    "get_builtin_patterns",
    # Detection
    "ChangeDecision",
    "ChangeDetector",
    # Orchestration
    "CrawlState",
    "BatchCrawlOrchestrator",
]
