"""Test cache persistence."""

import pytest

from xposed.schemas import LocationInfo, SourceTier
from xposed.services.persistence import (
    CachePersistence,
    FileStore,
    MemoryStore,
    decode_snapshot,
    encode_snapshot,
)
from xposed.utils.cache import BoundedCache

DAY_MS = 24 * 60 * 60 * 1000


def filled_cache(clock):
    cache = BoundedCache(10)
    cache.set("alice", LocationInfo(location="Norway", timestamp_ms=clock(), source_tier=SourceTier.LIVE))
    cache.set("ghost", None)
    cache.set("bob", LocationInfo(device="iOS App", timestamp_ms=clock() - 6 * DAY_MS))
    return cache


def test_snapshot_skips_negative_entries(clock):
    entries = decode_snapshot(encode_snapshot(filled_cache(clock), ttl_ms=7 * DAY_MS), now=clock())

    assert list(entries) == ["alice", "bob"]
    assert entries["alice"].location == "Norway"


def test_snapshot_drops_expired_entries(clock):
    blob = encode_snapshot(filled_cache(clock), ttl_ms=7 * DAY_MS)

    entries = decode_snapshot(blob, now=clock() + 2 * DAY_MS)

    assert list(entries) == ["alice"]


@pytest.mark.parametrize(
    "blob",
    [b"", b"{not json", b'{"version": 99, "entries": {}}', b'[1, 2, 3]', b'{"version": 1, "entries": []}'],
)
def test_unreadable_snapshots_load_nothing(blob):
    assert decode_snapshot(blob) == {}


def test_malformed_entries_are_skipped(clock):
    blob = (
        b'{"version": 1, "entries": {'
        b'"bad": {"v": {"is_accurate": "maybe"}, "e": 9999999999999}, '
        b'"nov": {"e": 9999999999999}, '
        b'"ok": {"v": {"location": "Peru", "timestamp_ms": 1}, "e": 9999999999999}}}'
    )
    assert list(decode_snapshot(blob, now=clock())) == ["ok"]


@pytest.mark.asyncio
async def test_file_store_round_trip(tmp_path):
    store = FileStore(tmp_path / "nested" / "cache.json")
    assert await store.load() is None

    await store.save(b"payload")

    assert await store.load() == b"payload"
    assert not (tmp_path / "nested" / "cache.json.tmp").exists()


@pytest.mark.asyncio
async def test_load_does_not_overwrite_fresher_entries(clock):
    store = MemoryStore(encode_snapshot(filled_cache(clock), ttl_ms=7 * DAY_MS))
    cache = BoundedCache(10)
    cache.set("alice", LocationInfo(location="Sweden"))
    persistence = CachePersistence(store, cache, ttl_ms=7 * DAY_MS, clock=clock)

    assert await persistence.load() == 2

    assert cache.get("alice").location == "Sweden"
    assert cache.get("bob").device == "iOS App"


@pytest.mark.asyncio
async def test_stop_writes_a_final_snapshot(clock):
    store = MemoryStore()
    cache = BoundedCache(10)
    persistence = CachePersistence(store, cache, flush_interval_s=3600, clock=clock)

    persistence.start()
    cache.set("carol", LocationInfo(location="Chile", timestamp_ms=clock()))
    await persistence.stop()

    assert list(decode_snapshot(store.blob, now=clock())) == ["carol"]


@pytest.mark.asyncio
async def test_failed_save_is_reported(clock):
    class BrokenStore(MemoryStore):
        async def save(self, blob):
            raise OSError("disk full")

    persistence = CachePersistence(BrokenStore(), BoundedCache(10), clock=clock)
    assert await persistence.flush() is False
