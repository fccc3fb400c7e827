"""Abstract key-value store contract used by the crawler and diff components."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Optional

from .types import ListResult


class KeyValueStore(ABC):
    """Asynchronous string key-value store with optional per-key TTL.

    ``list`` pages through keys sharing a prefix in ascending key order. A
    page with ``complete=False`` carries a cursor to pass to the next call.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for ``key`` or None when absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Store ``value``; ``ttl`` is a lifetime in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``; deleting a missing key is not an error."""

    @abstractmethod
    async def list(
        self, prefix: str, cursor: Optional[str] = None, limit: int = 1000
    ) -> ListResult:
        """List keys starting with ``prefix``."""

    async def close(self) -> None:
        """Release backend resources."""

    async def iter_keys(self, prefix: str, page_size: int = 1000) -> AsyncIterator[str]:
        """Yield every key under ``prefix``, following cursors until complete."""
        cursor: Optional[str] = None
        while True:
            page = await self.list(prefix, cursor=cursor, limit=page_size)
            for key in page.keys:
                yield key
            if page.complete or page.cursor is None:
                break
            cursor = page.cursor
