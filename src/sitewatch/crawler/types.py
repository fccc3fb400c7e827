"""Type definitions for the crawler module."""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..storage.types import BackupMetadata


class CrawlError(Exception):
    """Base exception for crawl-related errors."""

    pass


class FetchError(CrawlError):
    """Timeout, network failure or non-2xx response."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.message = message
        self.status_code = status_code
        super().__init__(f"Failed to fetch {url}: {message}")


class SitemapResolutionError(CrawlError):
    """A sitemap branch could not be fetched or parsed."""

    def __init__(self, url: str, message: str):
        self.url = url
        self.message = message
        super().__init__(f"Sitemap {url}: {message}")


class NormalizationError(CrawlError):
    """Raised internally by minification; never escapes the normalizer."""

    pass


@dataclass
class FetchResult:
    """A successfully fetched page."""

    url: str
    final_url: str
    content: str
    status: int
    content_type: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    fetch_time_ms: int = 0
    redirect_count: int = 0

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


@dataclass
class SitemapResolution:
    """Outcome of resolving one sitemap tree."""

    urls: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    fetch_count: int = 0
    visited: set[str] = field(default_factory=set)

    @property
    def ok(self) -> bool:
        return bool(self.urls)

    @property
    def warnings(self) -> list[str]:
        """Branch errors of a resolution that still produced URLs."""
        return list(self.errors) if self.ok else []


@dataclass
class SitemapCheck:
    """Result of the conditional sitemap probe."""

    changed: bool
    body: Optional[str] = None
    reason: str = ""


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class BatchOptions(_CamelModel):
    batch_size: Optional[int] = None
    batch_offset: int = 0
    continue_from_last: bool = False


class BackupSuccess(_CamelModel):
    success: Literal[True] = True
    url: str
    metadata: BackupMetadata
    content: str = Field(default="", exclude=True)
    changed: bool = False
    stored: bool = True
    store_error: Optional[str] = None


class BackupFailure(_CamelModel):
    success: Literal[False] = False
    url: str
    error: str


BackupResult = Union[BackupSuccess, BackupFailure]


class BatchProgressInfo(_CamelModel):
    completed: int
    total: int
    percent_complete: int


class BatchedResult(_CamelModel):
    """Report returned by every perform_batch invocation."""

    site_id: str
    total_urls: int = 0
    processed_in_batch: int = 0
    successful_backups: int = 0
    failed_backups: int = 0
    stored_backups: int = 0
    store_failures: int = 0
    changed_urls: list[str] = Field(default_factory=list)
    execution_time: int = 0  # milliseconds
    errors: list[str] = Field(default_factory=list)
    results: list[BackupResult] = Field(default_factory=list)
    batch_offset: int = 0
    batch_size: int = 0
    has_more: bool = False
    next_offset: Optional[int] = None
    progress: BatchProgressInfo = Field(
        default_factory=lambda: BatchProgressInfo(completed=0, total=0, percent_complete=0)
    )
    listener_mode: bool = False
    skipped: bool = False
