"""Cycle-safe sitemap resolution and the sitemap change probe."""

import hashlib
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from xml.etree import ElementTree

from ..storage.types import SitemapState
from ..utils.logging import get_structured_logger
from .fetcher import HttpFetcher
from .state import CrawlState
from .types import FetchError, SitemapCheck, SitemapResolution, SitemapResolutionError

logger = get_structured_logger(__name__)

SITEMAP_ACCEPT = "application/xml,text/xml,*/*;q=0.9"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_sitemap(url: str, body: str) -> tuple[str, list[str]]:
    """Parse a sitemap document into its kind and ``<loc>`` values.

    The kind is ``urlset`` or ``sitemapindex``; namespaces are ignored.
    """
    try:
        root = ElementTree.fromstring(body.encode("utf-8"))
    except ElementTree.ParseError as e:
        raise SitemapResolutionError(url, f"Invalid XML: {e}") from e

    kind = _local_name(root.tag)
    if kind == "urlset":
        entry_name = "url"
    elif kind == "sitemapindex":
        entry_name = "sitemap"
    else:
        raise SitemapResolutionError(url, f"Unrecognized sitemap root <{kind}>")

    locs = []
    for entry in root:
        if _local_name(entry.tag) != entry_name:
            continue
        for child in entry:
            if _local_name(child.tag) == "loc" and child.text and child.text.strip():
                locs.append(child.text.strip())
    return kind, locs


def structural_hash(url: str, body: str) -> str:
    """Hash that ignores ``<lastmod>`` churn in flat URL sets.

    A urlset hashes its sorted distinct locations; a sitemap index hashes its
    full body, since child lastmod values are the only signal that a child
    changed.
    """
    kind, locs = parse_sitemap(url, body)
    if kind == "urlset":
        material = "\n".join(sorted(set(locs)))
    else:
        material = body
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def looks_like_sitemap(loc: str) -> bool:
    return "sitemap" in loc.lower() and loc.lower().split("?", 1)[0].endswith(".xml")


def canonicalize_url(url: str) -> Optional[str]:
    """Drop the fragment, lowercase scheme and host, sort query parameters.

    Returns None for anything that is not an absolute http(s) URL.
    """
    parts = urlsplit(url.strip())
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path, query, "")
    )


def unique_urls(urls: list[str]) -> list[str]:
    """Canonicalize and de-duplicate, keeping first-seen order."""
    seen: dict[str, None] = {}
    for url in urls:
        canonical = canonicalize_url(url)
        if canonical is None:
            logger.debug("Skipping non-http URL", url=url)
            continue
        seen.setdefault(canonical, None)
    return list(seen)


class SitemapResolver:
    """Resolves the page URLs reachable from a sitemap or sitemap index.

    Every sitemap URL is checked against a visited set before it is fetched,
    so cyclic indexes terminate and the number of fetches never exceeds the
    number of distinct sitemap URLs. A depth bound guards against indexes
    that keep producing new URLs.
    """

    def __init__(
        self,
        fetcher: HttpFetcher,
        state: Optional[CrawlState] = None,
        timeout: float = 10.0,
        max_depth: int = 3,
    ):
        self.fetcher = fetcher
        self.state = state
        self.timeout = timeout
        self.max_depth = max_depth

    async def resolve(
        self,
        sitemap_url: str,
        max_depth: Optional[int] = None,
        visited: Optional[set[str]] = None,
        site_id: Optional[str] = None,
        prefetched: Optional[str] = None,
    ) -> SitemapResolution:
        """Resolve ``sitemap_url`` recursively.

        ``prefetched`` is a body already fetched for the root (by
        ``check_changed``) and is used instead of fetching it again. When
        ``site_id`` is given the root's validators and hash are recorded.
        """
        resolution = SitemapResolution(visited=visited if visited is not None else set())
        depth_limit = self.max_depth if max_depth is None else max_depth

        await self._resolve_node(
            sitemap_url, 0, depth_limit, resolution, site_id, prefetched
        )

        resolution.urls = list(dict.fromkeys(resolution.urls))
        if not resolution.urls and not resolution.errors:
            resolution.errors.append(f"No URLs found in sitemap {sitemap_url}")

        log = logger.warning if resolution.errors else logger.info
        log(
            "Sitemap resolved",
            sitemap_url=sitemap_url,
            urls=len(resolution.urls),
            fetches=resolution.fetch_count,
            errors=len(resolution.errors),
        )
        return resolution

    async def _resolve_node(
        self,
        url: str,
        depth: int,
        max_depth: int,
        resolution: SitemapResolution,
        site_id: Optional[str],
        prefetched: Optional[str],
    ) -> None:
        if url in resolution.visited:
            logger.debug("Skipping already visited sitemap", url=url)
            return
        if depth >= max_depth:
            resolution.errors.append(f"Sitemap depth limit {max_depth} reached at {url}")
            return
        resolution.visited.add(url)

        try:
            if depth == 0 and prefetched is not None:
                body = prefetched
            else:
                resolution.fetch_count += 1
                body = await self._fetch(url, record_for=site_id if depth == 0 else None)
            kind, locs = parse_sitemap(url, body)
        except SitemapResolutionError as e:
            resolution.errors.append(str(e))
            return

        if kind == "sitemapindex":
            children = locs
        else:
            children = [loc for loc in locs if looks_like_sitemap(loc)]
            resolution.urls.extend(loc for loc in locs if not looks_like_sitemap(loc))

        for child in children:
            await self._resolve_node(
                child, depth + 1, max_depth, resolution, site_id, None
            )

    async def _fetch(self, url: str, record_for: Optional[str] = None) -> str:
        try:
            response, _ = await self.fetcher.request(
                url, self.timeout, accept=SITEMAP_ACCEPT
            )
        except FetchError as e:
            raise SitemapResolutionError(url, e.message) from e

        if not response.is_success:
            raise SitemapResolutionError(
                url, f"Sitemap fetch failed: {response.status_code} {response.reason_phrase}"
            )

        body = response.text
        if record_for is not None:
            await self._record_state(
                record_for,
                url,
                body,
                response.headers.get("etag"),
                response.headers.get("last-modified"),
            )
        return body

    async def _record_state(
        self,
        site_id: str,
        url: str,
        body: str,
        etag: Optional[str],
        last_modified: Optional[str],
        content_hash: Optional[str] = None,
    ) -> None:
        if self.state is None:
            return
        if content_hash is None:
            try:
                content_hash = structural_hash(url, body)
            except SitemapResolutionError:
                return
        await self.state.save_sitemap_state(
            site_id,
            SitemapState(
                etag=etag,
                last_modified=last_modified,
                content_hash=content_hash,
                checked_at=datetime.now(timezone.utc).isoformat(),
            ),
        )

    async def check_changed(self, site_id: str, sitemap_url: str) -> SitemapCheck:
        """Probe the sitemap with stored validators.

        Unchanged means a 304, or a body whose structural hash equals the
        stored one. Missing state or any failure reports "changed" so
        updates are never missed. A changed body is returned for reuse.
        """
        if self.state is None:
            return SitemapCheck(changed=True, reason="no_state")

        previous = await self.state.get_sitemap_state(site_id)
        if previous is None:
            return SitemapCheck(changed=True, reason="no_state")

        headers = {}
        if previous.etag:
            headers["If-None-Match"] = previous.etag
        if previous.last_modified:
            headers["If-Modified-Since"] = previous.last_modified

        try:
            response, _ = await self.fetcher.request(
                sitemap_url, self.timeout, headers=headers, accept=SITEMAP_ACCEPT
            )
        except FetchError as e:
            logger.warning("Sitemap check failed; assuming changed", error=e.message)
            return SitemapCheck(changed=True, reason="check_failed")

        if response.status_code == 304:
            await self._record_state(
                site_id,
                sitemap_url,
                "",
                previous.etag,
                previous.last_modified,
                content_hash=previous.content_hash,
            )
            return SitemapCheck(changed=False, reason="not_modified")

        if not response.is_success:
            logger.warning(
                "Sitemap check failed; assuming changed", status=response.status_code
            )
            return SitemapCheck(changed=True, reason="check_failed")

        body = response.text
        try:
            digest = structural_hash(sitemap_url, body)
        except SitemapResolutionError as e:
            logger.warning("Sitemap check could not parse body; assuming changed", error=e.message)
            return SitemapCheck(changed=True, reason="unparseable")

        await self._record_state(
            site_id,
            sitemap_url,
            body,
            response.headers.get("etag"),
            response.headers.get("last-modified"),
            content_hash=digest,
        )
        if previous.content_hash == digest:
            return SitemapCheck(changed=False, reason="same_content")
        return SitemapCheck(changed=True, body=body, reason="content_changed")
