"""Async utility functions and helpers."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypeVar

from .types import AsyncTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")
ItemT = TypeVar("ItemT")


async def run_with_timeout(
    coro: Awaitable[T], timeout: float, timeout_message: Optional[str] = None
) -> T:
    """Run a coroutine with a timeout."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        msg = timeout_message or f"Operation timed out after {timeout}s"
        logger.warning(msg)
        raise AsyncTimeoutError(msg) from e


async def retry_async(
    coro_factory: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Retry an async operation with exponential backoff.

    ``coro_factory`` is called once per attempt, so every attempt awaits a
    fresh coroutine. Attempt ``n`` (zero based) waits ``delay * backoff_factor ** n``
    before the next try.
    """
    last_exception: Optional[BaseException] = None
    current_delay = delay

    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except exceptions as e:
            last_exception = e

            if attempt == max_retries:
                logger.debug(f"All {max_retries + 1} attempts failed")
                break

            if on_retry is not None:
                on_retry(attempt, e)
            if current_delay > 0:
                await asyncio.sleep(current_delay)
            current_delay *= backoff_factor

    raise last_exception


class AsyncContextManager:
    """Base class for async context managers."""

    async def __aenter__(self):
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()

    async def setup(self) -> None:
        """Setup the context manager."""
        pass

    async def cleanup(self) -> None:
        """Cleanup the context manager."""
        pass


class AsyncBatch:
    """Process items in sequential chunks, each chunk gathered concurrently.

    Exceptions raised by the processor are returned in place of results so a
    single failing item never cancels its siblings.
    """

    def __init__(self, batch_size: int = 10):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size

    async def process(
        self,
        items: list[ItemT],
        processor: Callable[[ItemT], Awaitable[T]],
    ) -> list[Any]:
        results: list[Any] = []

        for i in range(0, len(items), self.batch_size):
            batch = items[i : i + self.batch_size]
            batch_results = await asyncio.gather(
                *(processor(item) for item in batch), return_exceptions=True
            )
            results.extend(batch_results)

        return results
