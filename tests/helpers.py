"""Shared test doubles: a scripted web server and sitemap builders."""

from collections.abc import Callable
from typing import Union

import httpx

from sitewatch.storage import MemoryKeyValueStore, StoreError

SITEMAP_URL = "https://example.com/sitemap.xml"
DEFAULT_PAGE = "<html><body>ok</body></html>"

Route = Union[str, httpx.Response, Callable[[httpx.Request], httpx.Response], list]


def urlset(urls: list[str], lastmod: str = "") -> str:
    entries = "\n".join(
        f"  <url><loc>{u}</loc>{f'<lastmod>{lastmod}</lastmod>' if lastmod else ''}</url>"
        for u in urls
    )
    return (
        '<?xml version="1.0"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{entries}\n</urlset>"
    )


def sitemap_index(urls: list[str]) -> str:
    entries = "\n".join(f"  <sitemap><loc>{u}</loc></sitemap>" for u in urls)
    return (
        '<?xml version="1.0"?>\n'
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{entries}\n</sitemapindex>"
    )


class FakeWeb:
    """Answers requests from a route table and records every URL requested.

    A route is a body string, an httpx.Response, a callable taking the
    request, or a list of those served in order (the last one repeats).
    Unknown URLs get a small HTML page.
    """

    def __init__(self, routes: dict[str, Route] = None):
        self.routes = dict(routes or {})
        self.calls: list[str] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls.append(url)
        self.requests.append(request)

        route = self.routes.get(url, DEFAULT_PAGE)
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if callable(route):
            return route(request)
        if isinstance(route, httpx.Response):
            return route

        content_type = "application/xml" if url.endswith(".xml") else "text/html"
        return httpx.Response(200, text=route, headers={"content-type": content_type})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls_to(self, predicate: Callable[[str], bool]) -> list[str]:
        return [url for url in self.calls if predicate(url)]


class FlakyStore(MemoryKeyValueStore):
    """Memory store whose writes fail for keys starting with ``fail_prefix``."""

    def __init__(self, fail_prefix: str):
        super().__init__()
        self.fail_prefix = fail_prefix

    async def put(self, key, value, ttl=None):
        if key.startswith(self.fail_prefix):
            raise StoreError(key, "write rejected")
        await super().put(key, value, ttl=ttl)
