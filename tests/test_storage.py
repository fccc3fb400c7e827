"""Tests for the key-value stores, key schema and backup repository."""

import pytest
import pytest_asyncio

from sitewatch.config.settings import StorageSettings
from sitewatch.storage import (
    BackupMetadata,
    BackupRepository,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
    keys,
)
from sitewatch.storage.types import BatchProgress


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def kv(request):
    """Each backend behind the same contract, driven by a fake clock."""
    clock = FakeClock()
    if request.param == "memory":
        backend = MemoryKeyValueStore(clock=clock)
    else:
        backend = await SqliteKeyValueStore.open(
            StorageSettings(url="sqlite+aiosqlite:///:memory:"), clock=clock
        )
    backend.clock = clock
    yield backend
    await backend.close()


def metadata(url: str, timestamp: str, digest: str = "h1") -> BackupMetadata:
    return BackupMetadata(url=url, timestamp=timestamp, content_hash=digest, size=10)


class TestKeyValueContract:
    """Behaviour shared by every KeyValueStore backend."""

    @pytest.mark.asyncio
    async def test_get_put_delete(self, kv):
        assert await kv.get("a") is None

        await kv.put("a", "1")
        assert await kv.get("a") == "1"

        await kv.put("a", "2")
        assert await kv.get("a") == "2"

        await kv.delete("a")
        assert await kv.get("a") is None

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_not_an_error(self, kv):
        await kv.delete("never-written")

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, kv):
        await kv.put("short", "x", ttl=10)
        await kv.put("forever", "y")

        kv.clock.now += 9
        assert await kv.get("short") == "x"

        kv.clock.now += 2
        assert await kv.get("short") is None
        assert await kv.get("forever") == "y"

    @pytest.mark.asyncio
    async def test_list_is_prefix_scoped_and_sorted(self, kv):
        for key in ["p:b", "p:a", "q:a", "p:c"]:
            await kv.put(key, "v")

        page = await kv.list("p:")

        assert page.keys == ["p:a", "p:b", "p:c"]
        assert page.complete
        assert page.cursor is None

    @pytest.mark.asyncio
    async def test_list_paginates_with_cursor(self, kv):
        for i in range(5):
            await kv.put(f"k:{i}", "v")

        first = await kv.list("k:", limit=2)
        assert first.keys == ["k:0", "k:1"]
        assert not first.complete

        second = await kv.list("k:", cursor=first.cursor, limit=2)
        assert second.keys == ["k:2", "k:3"]

        collected = [key async for key in kv.iter_keys("k:", page_size=2)]
        assert collected == [f"k:{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_list_hides_expired_keys(self, kv):
        await kv.put("e:1", "v", ttl=5)
        await kv.put("e:2", "v")
        kv.clock.now += 6

        page = await kv.list("e:")
        assert page.keys == ["e:2"]

    @pytest.mark.asyncio
    async def test_list_prefix_with_like_wildcards(self, kv):
        await kv.put("a_b:1", "v")
        await kv.put("axb:1", "v")

        page = await kv.list("a_b:")
        assert page.keys == ["a_b:1"]


class TestKeySchema:
    """Test key construction helpers."""

    def test_url_hash_is_sixteen_hex_chars(self):
        digest = keys.url_hash("https://example.com/page")
        assert len(digest) == 16
        int(digest, 16)

    def test_key_layout(self):
        url = "https://example.com/"
        h = keys.url_hash(url)

        assert keys.backup_key("s", "2026-02-22", url) == f"backup:s:2026-02-22:{h}"
        assert keys.meta_key("s", "2026-02-22", url) == f"meta:s:2026-02-22:{h}"
        assert keys.latest_key("s", url) == f"latest:s:{h}"
        assert keys.prev_latest_key("s", url) == f"prev_latest:s:{h}"
        assert keys.urls_cache_chunk_key("s", "2026-02-22", 3) == "urls_cache:s:2026-02-22:chunk:3"
        assert keys.listener_key("s") == "sitemap_listener:s"
        assert keys.snapshot_key("s") == "sitemap_snapshot:s"

    def test_date_from_key(self):
        assert keys.date_from_key("backup:s:2026-02-22:abcd") == "2026-02-22"
        assert keys.date_from_key("latest:s:abcd") is None

    def test_records_serialize_camel_case(self):
        progress = BatchProgress(next_offset=25, total_urls=100, last_run_time="t")
        raw = progress.to_json()

        assert '"nextOffset":25' in raw
        assert BatchProgress.from_json(raw).next_offset == 25

        meta = metadata("https://example.com/", "2026-02-22T00:00:00+00:00")
        assert '"hash":"h1"' in meta.to_json()


class TestBackupRepository:
    """Test dated backups, latest pointers and retention."""

    @pytest.fixture
    def repo(self, store):
        return BackupRepository(store)

    @pytest.mark.asyncio
    async def test_store_backup_moves_latest_to_prev_latest(self, repo):
        url = "https://example.com/"
        first = metadata(url, "2026-02-21T02:00:00+00:00", "h1")
        second = metadata(url, "2026-02-22T02:00:00+00:00", "h2")

        await repo.store_backup("s", "2026-02-21", "<p>one</p>", first)
        previous = await repo.get_latest("s", url)
        await repo.store_backup("s", "2026-02-22", "<p>two</p>", second, previous=previous)

        assert (await repo.get_latest("s", url)).content_hash == "h2"
        assert (await repo.get_previous_latest("s", url)).content_hash == "h1"

        backup = await repo.get_backup_for("s", await repo.get_previous_latest("s", url))
        assert backup.content == "<p>one</p>"
        assert backup.date == "2026-02-21"

    @pytest.mark.asyncio
    async def test_history_is_newest_first(self, repo):
        url = "https://example.com/"
        for day in ("20", "22", "21"):
            await repo.store_backup(
                "s", f"2026-02-{day}", "x", metadata(url, f"2026-02-{day}T00:00:00+00:00")
            )

        history = await repo.get_backup_history("s", url)
        assert [entry.date for entry in history] == ["2026-02-22", "2026-02-21", "2026-02-20"]

    @pytest.mark.asyncio
    async def test_retention_deletes_only_old_dated_records(self, repo, store):
        url = "https://example.com/"
        await repo.store_backup("s", "2026-02-01", "old", metadata(url, "2026-02-01T00:00:00+00:00"))
        await repo.store_backup("s", "2026-02-20", "new", metadata(url, "2026-02-20T00:00:00+00:00"))
        await store.put(keys.batch_progress_key("s"), "{}")
        await store.put(keys.urls_cache_key("s", "2026-02-01"), "{}")

        deleted = await repo.delete_backups_before("s", "2026-02-15")

        assert deleted == 2
        assert await store.get(keys.backup_key("s", "2026-02-01", url)) is None
        assert await store.get(keys.meta_key("s", "2026-02-01", url)) is None
        assert await store.get(keys.backup_key("s", "2026-02-20", url)) == "new"
        assert await store.get(keys.latest_key("s", url)) is not None
        assert await store.get(keys.batch_progress_key("s")) == "{}"
        assert await store.get(keys.urls_cache_key("s", "2026-02-01")) == "{}"

    @pytest.mark.asyncio
    async def test_retention_is_scoped_to_site(self, repo, store):
        url = "https://example.com/"
        await repo.store_backup("a", "2026-01-01", "x", metadata(url, "2026-01-01T00:00:00+00:00"))
        await repo.store_backup("b", "2026-01-01", "x", metadata(url, "2026-01-01T00:00:00+00:00"))

        await repo.delete_backups_before("a", "2026-02-01")

        assert await store.get(keys.backup_key("b", "2026-01-01", url)) == "x"

    @pytest.mark.asyncio
    async def test_corrupt_metadata_reads_as_missing(self, repo, store):
        url = "https://example.com/"
        await store.put(keys.latest_key("s", url), "not json")

        assert await repo.get_latest("s", url) is None

    @pytest.mark.asyncio
    async def test_storage_stats_and_url_listing(self, repo):
        for url in ("https://example.com/b", "https://example.com/a"):
            await repo.store_backup("s", "2026-02-22", "x", metadata(url, "2026-02-22T00:00:00+00:00"))

        stats = await repo.get_storage_stats("s")
        assert stats.total_backups == 2
        assert stats.oldest_backup == stats.newest_backup == "2026-02-22"
        assert await repo.list_all_urls("s") == ["https://example.com/a", "https://example.com/b"]
