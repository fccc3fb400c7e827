"""Key-value store persisted through SQLAlchemy."""

import time
from collections.abc import Callable
from typing import Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError

from ...config.settings import StorageSettings
from ..interface import KeyValueStore
from ..types import ListResult, StoreError
from .database import DatabaseManager
from .models import KeyValueEntry


class SqliteKeyValueStore(KeyValueStore):
    """KeyValueStore over a single ``kv_entries`` table.

    Expired rows are invisible to reads and removed lazily. Listing uses the
    last returned key as the cursor so pages stay stable under inserts.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.db = db_manager
        self._clock = clock or time.time

    @classmethod
    async def open(
        cls, settings: StorageSettings, clock: Optional[Callable[[], float]] = None
    ) -> "SqliteKeyValueStore":
        manager = DatabaseManager(settings)
        await manager.setup()
        return cls(manager, clock=clock)

    async def close(self) -> None:
        await self.db.cleanup()

    def _live(self):
        return or_(
            KeyValueEntry.expires_at.is_(None),
            KeyValueEntry.expires_at > self._clock(),
        )

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self.db.get_session() as session:
                entry = await session.get(KeyValueEntry, key)
                if entry is None:
                    return None
                if entry.expires_at is not None and entry.expires_at <= self._clock():
                    await session.delete(entry)
                    return None
                return entry.value
        except SQLAlchemyError as e:
            raise StoreError(key, str(e)) from e

    async def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        try:
            async with self.db.get_session() as session:
                await session.merge(
                    KeyValueEntry(key=key, value=value, expires_at=expires_at)
                )
        except SQLAlchemyError as e:
            raise StoreError(key, str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            async with self.db.get_session() as session:
                await session.execute(
                    delete(KeyValueEntry).where(KeyValueEntry.key == key)
                )
        except SQLAlchemyError as e:
            raise StoreError(key, str(e)) from e

    async def list(
        self, prefix: str, cursor: Optional[str] = None, limit: int = 1000
    ) -> ListResult:
        stmt = (
            select(KeyValueEntry.key)
            .where(KeyValueEntry.key.startswith(prefix, autoescape=True))
            .where(self._live())
            .order_by(KeyValueEntry.key)
            .limit(limit + 1)
        )
        if cursor is not None:
            stmt = stmt.where(KeyValueEntry.key > cursor)

        try:
            async with self.db.get_session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(prefix, str(e)) from e

        complete = len(rows) <= limit
        keys = list(rows[:limit])
        return ListResult(
            keys=keys,
            cursor=None if complete else keys[-1],
            complete=complete,
        )
