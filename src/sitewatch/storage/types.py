"""Type definitions for storage components.

Persisted records serialize with camelCase field names; the Python side uses
snake_case and accepts either on input.
"""

from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StorageError(Exception):
    """Base exception for storage-related errors."""

    pass


class StoreError(StorageError):
    """A key-value read or write failed."""

    def __init__(self, key: str, message: str):
        self.key = key
        self.message = message
        super().__init__(f"Store operation failed for {key}: {message}")


@dataclass
class ListResult:
    """One page of a prefix listing."""

    keys: list[str] = field(default_factory=list)
    cursor: Optional[str] = None
    complete: bool = True


class StoredRecord(BaseModel):
    """Base for JSON records kept in the key-value store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str):
        return cls.model_validate_json(raw)


class BackupMetadata(StoredRecord):
    """What was fetched for one URL on one date."""

    url: str
    timestamp: str
    content_hash: str = Field(alias="hash")
    normalized_hash: Optional[str] = None
    status: int = 200
    content_type: str = ""
    etag: Optional[str] = None
    size: int = 0
    fetch_time: int = 0  # milliseconds
    redirect_count: int = 0
    final_url: Optional[str] = None
    detected_type: Optional[str] = None

    @property
    def comparable_hash(self) -> str:
        return self.normalized_hash or self.content_hash


class BatchProgress(StoredRecord):
    next_offset: int
    total_urls: int
    last_run_time: str
    urls_cache_date: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_offset < self.total_urls


class SitemapState(StoredRecord):
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_hash: Optional[str] = None
    checked_at: str


class FullScanState(StoredRecord):
    date: str
    completed_at: str
    total_urls: int
