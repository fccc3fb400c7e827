"""Storage key schema.

Every persisted record lives under one of these keys; the layout is shared
with other readers of the store and must not change::

    backup:{site}:{date}:{urlHash}      dated page content
    meta:{site}:{date}:{urlHash}        dated BackupMetadata
    latest:{site}:{urlHash}             most recent BackupMetadata
    prev_latest:{site}:{urlHash}        the latest value it replaced
    batch_progress:{site}               BatchProgress
    sitemap_state:{site}                SitemapState
    full_scan:{site}                    FullScanState
    sitemap_listener:{site}             "1" while listener mode is on
    sitemap_snapshot:{site}             JSON list of known URLs
    sitemap_snapshot_pending:{site}     live URLs awaiting the end of a listener cycle
    diff:{site}:{date}:{urlHash}        DiffCacheEntry
    urls_cache:{site}:{date}            URL cache header
    urls_cache:{site}:{date}:chunk:{i}  URL cache chunk
"""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional


def url_hash(url: str) -> str:
    """First 16 hex characters of SHA-256(url)."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def utc_date(moment: Optional[datetime] = None) -> str:
    """``YYYY-MM-DD`` for ``moment`` (default now) in UTC."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d")


def days_ago(days: int, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return utc_date(now - timedelta(days=days))


def backup_key(site_id: str, date: str, url: str) -> str:
    return f"backup:{site_id}:{date}:{url_hash(url)}"


def meta_key(site_id: str, date: str, url: str) -> str:
    return f"meta:{site_id}:{date}:{url_hash(url)}"


def latest_key(site_id: str, url: str) -> str:
    return f"latest:{site_id}:{url_hash(url)}"


def prev_latest_key(site_id: str, url: str) -> str:
    return f"prev_latest:{site_id}:{url_hash(url)}"


def batch_progress_key(site_id: str) -> str:
    return f"batch_progress:{site_id}"


def sitemap_state_key(site_id: str) -> str:
    return f"sitemap_state:{site_id}"


def full_scan_key(site_id: str) -> str:
    return f"full_scan:{site_id}"


def listener_key(site_id: str) -> str:
    return f"sitemap_listener:{site_id}"


def snapshot_key(site_id: str) -> str:
    return f"sitemap_snapshot:{site_id}"


def pending_snapshot_key(site_id: str) -> str:
    return f"sitemap_snapshot_pending:{site_id}"


def diff_key(site_id: str, date: str, url: str) -> str:
    return f"diff:{site_id}:{date}:{url_hash(url)}"


def urls_cache_prefix(site_id: str) -> str:
    return f"urls_cache:{site_id}:"


def urls_cache_key(site_id: str, date: str) -> str:
    return f"urls_cache:{site_id}:{date}"


def urls_cache_chunk_key(site_id: str, date: str, index: int) -> str:
    return f"urls_cache:{site_id}:{date}:chunk:{index}"


def date_from_key(key: str) -> Optional[str]:
    """Extract the date component of a ``backup:``/``meta:`` key."""
    parts = key.split(":")
    if len(parts) != 4 or parts[0] not in ("backup", "meta"):
        return None
    return parts[2]
