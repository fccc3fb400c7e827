"""Database session management and connection handling."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.asyncio.engine import AsyncEngine
from sqlalchemy.pool import StaticPool

from ...config.settings import StorageSettings
from ...utils.async_utils import AsyncContextManager
from ...utils.logging import get_structured_logger
from .models import Base

logger = get_structured_logger(__name__)


def to_async_url(url: str) -> str:
    """Translate a sync SQLite URL into its aiosqlite form."""
    if url.startswith("sqlite+aiosqlite:"):
        return url
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if url.startswith("sqlite:"):
        return url.replace("sqlite:", "sqlite+aiosqlite:", 1)
    return url


class DatabaseManager(AsyncContextManager):
    """Manages database connections and sessions."""

    def __init__(self, settings: StorageSettings):
        self.settings = settings
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._initialized = False

    async def setup(self) -> None:
        """Initialize database connection and session factory."""
        if self._initialized:
            return

        async_url = to_async_url(self.settings.url)
        logger.info("Initializing database connection", url=async_url)

        engine_kwargs = {"echo": self.settings.echo}
        if async_url.startswith("sqlite"):
            engine_kwargs.update(
                {
                    "poolclass": StaticPool,
                    "connect_args": {"check_same_thread": False, "timeout": 30},
                }
            )
        else:
            engine_kwargs.update({"pool_pre_ping": True, "pool_recycle": 3600})

        self.engine = create_async_engine(async_url, **engine_kwargs)

        if async_url.startswith("sqlite") and ":memory:" not in async_url:

            @event.listens_for(self.engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.close()

        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        await self.create_tables()

        self._initialized = True
        logger.info("Database initialization complete")

    async def cleanup(self) -> None:
        """Clean up database connections."""
        if self.engine:
            logger.info("Closing database connections")
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            self._initialized = False

    async def create_tables(self) -> None:
        """Create database tables."""
        if not self.engine:
            raise RuntimeError("Database engine not initialized")

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("Database tables ready")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session with automatic commit and rollback."""
        if not self.session_factory:
            raise RuntimeError("Database not initialized")

        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error("Session error, rolling back", error=str(e))
            await session.rollback()
            raise
        finally:
            await session.close()
