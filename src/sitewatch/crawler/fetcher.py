"""Async HTTP page fetcher with retries and manual redirect handling."""

import time
from typing import Optional
from urllib.parse import urljoin

import httpx

from ..utils.async_utils import AsyncContextManager, retry_async, run_with_timeout
from ..utils.logging import get_structured_logger
from ..utils.types import AsyncTimeoutError
from .types import FetchError, FetchResult

logger = get_structured_logger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


class HttpFetcher(AsyncContextManager):
    """Fetches pages over a shared httpx client.

    Redirects are followed by hand so that every hop is counted and bounded.
    A client passed in by the caller is never closed by the fetcher.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "MultiSiteBackup/1.0",
        max_redirects: int = 5,
        backoff_base: float = 1.0,
    ):
        self._client = client
        self._owns_client = client is None
        self.user_agent = user_agent
        self.max_redirects = max_redirects
        self.backoff_base = backoff_base

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
            self._owns_client = True
        return self._client

    async def cleanup(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        url: str,
        timeout: float,
        headers: Optional[dict[str, str]] = None,
        accept: str = DEFAULT_ACCEPT,
    ) -> tuple[httpx.Response, int]:
        """GET ``url`` following at most ``max_redirects`` hops.

        Returns the final response (any status) and the number of redirects
        taken. Network failures and timeouts raise FetchError.
        """
        request_headers = {"User-Agent": self.user_agent, "Accept": accept}
        if headers:
            request_headers.update(headers)

        current_url = url
        redirect_count = 0
        while True:
            try:
                response = await self.client.get(
                    current_url,
                    headers=request_headers,
                    timeout=timeout,
                    follow_redirects=False,
                )
            except httpx.TimeoutException as e:
                raise FetchError(url, f"Timed out after {timeout}s") from e
            except httpx.HTTPError as e:
                raise FetchError(url, f"Network error: {e}") from e

            location = response.headers.get("location")
            if response.status_code not in REDIRECT_STATUSES or not location:
                return response, redirect_count

            if redirect_count >= self.max_redirects:
                raise FetchError(
                    url,
                    f"Too many redirects (more than {self.max_redirects})",
                    response.status_code,
                )
            redirect_count += 1
            current_url = urljoin(str(response.url), location)

    async def fetch_once(self, url: str, timeout: float) -> FetchResult:
        started = time.monotonic()
        response, redirect_count = await self.request(url, timeout)

        if not response.is_success:
            raise FetchError(
                url,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                response.status_code,
            )

        return FetchResult(
            url=url,
            final_url=str(response.url),
            content=response.text,
            status=response.status_code,
            content_type=response.headers.get("content-type", "unknown"),
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
            fetch_time_ms=int((time.monotonic() - started) * 1000),
            redirect_count=redirect_count,
        )

    async def fetch(self, url: str, timeout: float = 10.0, retries: int = 3) -> FetchResult:
        """Fetch with up to ``retries`` extra attempts and exponential backoff.

        The timeout covers the whole redirect chain of a single attempt.
        """

        async def attempt() -> FetchResult:
            try:
                return await run_with_timeout(
                    self.fetch_once(url, timeout),
                    timeout,
                    timeout_message=f"Fetching {url} timed out after {timeout}s",
                )
            except AsyncTimeoutError as e:
                raise FetchError(url, str(e)) from e

        def log_retry(attempt_number: int, error: BaseException) -> None:
            logger.debug(
                "Fetch attempt failed, retrying",
                url=url,
                attempt=attempt_number + 1,
                error=str(error),
            )

        return await retry_async(
            attempt,
            max_retries=retries,
            delay=self.backoff_base,
            backoff_factor=2.0,
            exceptions=(FetchError,),
            on_retry=log_retry,
        )
