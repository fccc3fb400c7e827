"""In-process key-value store."""

import bisect
import time
from collections.abc import Callable
from typing import Optional

from .interface import KeyValueStore
from .types import ListResult


class MemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store honouring TTLs against an injectable clock."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}

    def _expired(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        return expires_at is not None and expires_at <= self._clock()

    def _evict(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        if key not in self._data:
            return None
        if self._expired(key):
            self._evict(key)
            return None
        return self._data[key]

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._data[key] = value
        if ttl is not None:
            self._expires[key] = self._clock() + ttl
        else:
            self._expires.pop(key, None)

    async def delete(self, key: str) -> None:
        self._evict(key)

    async def list(
        self, prefix: str, cursor: Optional[str] = None, limit: int = 1000
    ) -> ListResult:
        for key in [k for k in self._data if k.startswith(prefix) and self._expired(k)]:
            self._evict(key)

        keys = sorted(k for k in self._data if k.startswith(prefix))
        start = bisect.bisect_right(keys, cursor) if cursor is not None else 0
        page = keys[start : start + limit]
        complete = start + limit >= len(keys)
        return ListResult(
            keys=page,
            cursor=None if complete or not page else page[-1],
            complete=complete,
        )

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data and not self._expired(key)
