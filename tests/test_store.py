import pytest

from errors import StoreError
from models import DatabaseQueue
from store import MemorySeenStore, SqliteSeenStore, Validators, create_store

FEED = "https://example.com/feed.xml"
OTHER = "https://example.org/atom"


def sqlite_store(tmp_path):
    return SqliteSeenStore(str(tmp_path / "seen.db"))


@pytest.mark.asyncio
async def test_memory_store_records_and_filters():
    store = MemorySeenStore()

    assert await store.has_seen_feed(FEED) is False
    await store.record_fingerprints(FEED, ["md5:a", "md5:b"])

    assert await store.has_seen_feed(FEED) is True
    assert await store.seen_fingerprints(FEED, ["md5:a", "md5:c"]) == {"md5:a"}
    assert await store.seen_fingerprints(OTHER, ["md5:a"]) == set()


@pytest.mark.asyncio
async def test_memory_store_empty_record_marks_feed_seen():
    store = MemorySeenStore()

    await store.record_fingerprints(FEED, [])

    assert await store.has_seen_feed(FEED) is True
    assert await store.seen_fingerprints(FEED, ["md5:a"]) == set()


@pytest.mark.asyncio
async def test_memory_store_has_no_validators():
    store = MemorySeenStore()

    await store.store_validators(FEED, Validators(etag='"x"'))

    assert store.is_persistent is False
    assert await store.load_validators(FEED) is None


@pytest.mark.asyncio
async def test_sqlite_store_records_and_filters(tmp_path):
    async with sqlite_store(tmp_path) as store:
        assert await store.has_seen_feed(FEED) is False

        await store.record_fingerprints(FEED, ["md5:a", "md5:b"])
        # Recording again is idempotent
        await store.record_fingerprints(FEED, ["md5:b", "md5:c"])

        assert await store.has_seen_feed(FEED) is True
        assert await store.seen_fingerprints(FEED, ["md5:a", "md5:c", "md5:z"]) == {"md5:a", "md5:c"}
        assert await store.seen_fingerprints(OTHER, ["md5:a"]) == set()
        assert await store.db.execute("count_fingerprints", feed_url=FEED) == 3


@pytest.mark.asyncio
async def test_sqlite_store_survives_restart(tmp_path):
    async with sqlite_store(tmp_path) as store:
        await store.record_fingerprints(FEED, ["md5:a"])
        await store.record_fingerprints(OTHER, [])
        await store.store_validators(FEED, Validators(etag='"v2"', last_modified="Wed, 12 Apr 2023 09:53:00 GMT"))

    async with sqlite_store(tmp_path) as store:
        assert store.is_persistent is True
        assert await store.has_seen_feed(FEED) is True
        assert await store.has_seen_feed(OTHER) is True
        assert await store.seen_fingerprints(FEED, ["md5:a"]) == {"md5:a"}
        validators = await store.load_validators(FEED)
        assert validators == Validators(etag='"v2"', last_modified="Wed, 12 Apr 2023 09:53:00 GMT")


@pytest.mark.asyncio
async def test_sqlite_validators_do_not_mark_feed_seen(tmp_path):
    async with sqlite_store(tmp_path) as store:
        await store.store_validators(FEED, Validators(etag='"v1"'))

        assert await store.has_seen_feed(FEED) is False
        assert await store.load_validators(OTHER) is None

        await store.store_validators(FEED, Validators(last_modified="Wed, 12 Apr 2023 09:53:00 GMT"))
        assert await store.load_validators(FEED) == Validators(last_modified="Wed, 12 Apr 2023 09:53:00 GMT")


@pytest.mark.asyncio
async def test_sqlite_store_handles_large_candidate_sets(tmp_path):
    fingerprints = [f"md5:{i:032x}" for i in range(1200)]
    async with sqlite_store(tmp_path) as store:
        await store.record_fingerprints(FEED, fingerprints[:700])

        seen = await store.seen_fingerprints(FEED, fingerprints)

    assert seen == set(fingerprints[:700])


@pytest.mark.asyncio
async def test_closed_store_raises_store_error(tmp_path):
    store = sqlite_store(tmp_path)
    await store.start()
    await store.close()

    with pytest.raises(StoreError):
        await store.has_seen_feed(FEED)


@pytest.mark.asyncio
async def test_unknown_operation_raises_store_error(tmp_path):
    db = DatabaseQueue(str(tmp_path / "ops.db"))
    await db.start()
    try:
        with pytest.raises(StoreError):
            await db.execute("drop_everything")
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_list_feeds_reports_counts_and_validators(tmp_path):
    async with sqlite_store(tmp_path) as store:
        await store.record_fingerprints(FEED, ["md5:a", "md5:b"])
        await store.store_validators(OTHER, Validators(etag='"o"'))

        feeds = await store.db.execute("list_feeds")

    assert [(f['url'], f['fingerprints'], f['etag']) for f in feeds] == [
        (FEED, 2, None),
        (OTHER, 0, '"o"'),
    ]
    assert feeds[0]['first_seen'] is not None
    assert feeds[1]['first_seen'] is None


@pytest.mark.asyncio
async def test_lifecycle_methods_are_not_operations(tmp_path):
    async with sqlite_store(tmp_path) as store:
        with pytest.raises(StoreError):
            await store.db.execute("stop")
        assert await store.has_seen_feed(FEED) is False


@pytest.mark.asyncio
async def test_unopenable_database_raises_store_error(tmp_path):
    store = SqliteSeenStore(str(tmp_path / "missing-dir" / "seen.db"))

    with pytest.raises(StoreError):
        await store.start()


def test_create_store():
    assert isinstance(create_store("memory"), MemorySeenStore)
    assert isinstance(create_store("SQLite", "feeds.db"), SqliteSeenStore)
    with pytest.raises(StoreError):
        create_store("redis")


@pytest.mark.asyncio
async def test_stats_count_seen_feeds_and_fingerprints(tmp_path):
    memory = MemorySeenStore()
    await memory.record_fingerprints(FEED, ["md5:a", "md5:b"])
    await memory.record_fingerprints(OTHER, [])

    assert await memory.stats() == {"feeds": 2, "fingerprints": 2}

    async with sqlite_store(tmp_path) as store:
        await store.record_fingerprints(FEED, ["md5:a", "md5:b"])
        await store.record_fingerprints(OTHER, ["md5:c"])
        # Validators alone do not make a feed seen
        await store.store_validators("https://example.net/rss", Validators(etag='"n"'))

        assert await store.stats() == {"feeds": 2, "fingerprints": 3}
