"""Test the shared cloud cache client against a local server."""

import time

import pytest
from aiohttp import web
from aiohttp import test_utils

from xposed.config import CloudCacheSettings
from xposed.schemas import LocationInfo, SourceTier
from xposed.sources.cloud_cache import CloudCacheClient

ENTRIES = {
    "alice": {"l": "Norway", "d": "Web App", "a": True, "t": 1_700_000_000},
    "carol": {"l": "Chile", "d": "Android App", "a": False, "t": 1_700_000_100},
    "broken": "not an entry",
}


def make_app(state):
    async def lookup(request):
        users = request.query["users"].split(",")
        state["lookups"].append(users)
        state["times"].append(time.monotonic())
        if state.get("status"):
            return web.Response(status=state["status"])
        return web.json_response({"results": {u: ENTRIES[u] for u in users if u in ENTRIES}})

    async def contribute(request):
        state["contributions"].append(await request.json())
        return web.Response(status=state.get("contribute_status", 200))

    async def stats(request):
        return web.json_response({"totalEntries": 1234, "totalContributions": 56})

    app = web.Application()
    app.router.add_get("/lookup", lookup)
    app.router.add_post("/contribute", contribute)
    app.router.add_get("/stats", stats)
    return app


def new_state(**kwargs):
    return {"lookups": [], "contributions": [], "times": [], **kwargs}


def make_client(server, **config):
    config.setdefault("batch_delay_ms", 0)
    return CloudCacheClient(CloudCacheSettings(api_url=str(server.make_url("/")), **config))


@pytest.mark.asyncio
async def test_lookup_batch_dedups_and_chunks():
    state = new_state()
    async with test_utils.TestServer(make_app(state)) as server:
        client = make_client(server, batch_size=2)
        try:
            results = await client.lookup_batch(["Alice", "bob", "alice", "carol", "broken"])
        finally:
            await client.close()

    assert state["lookups"] == [["alice", "bob"], ["carol", "broken"]]
    assert set(results) == {"alice", "carol"}
    assert results["alice"].location == "Norway"
    assert results["alice"].timestamp_ms == 1_700_000_000_000
    assert results["carol"].is_accurate is False
    assert results["carol"].source_tier == SourceTier.SHARED


@pytest.mark.asyncio
async def test_rate_limit_stops_batch_and_backs_off():
    state = new_state(status=429)
    async with test_utils.TestServer(make_app(state)) as server:
        client = make_client(server, batch_size=1)
        try:
            first = await client.lookup_batch(["alice", "carol"])
            second = await client.lookup_batch(["alice"])
        finally:
            await client.close()

    assert first == {}
    assert second == {}
    assert state["lookups"] == [["alice"]]
    assert client.rate_limiter.is_blocked()


@pytest.mark.asyncio
async def test_server_error_backs_off_remaining_batches():
    state = new_state(status=500)
    async with test_utils.TestServer(make_app(state)) as server:
        client = make_client(server, batch_size=1)
        try:
            assert await client.lookup_batch(["alice", "carol", "dave"]) == {}
        finally:
            await client.close()

    assert state["lookups"] == [["alice"]]
    assert client.rate_limiter.is_blocked()


@pytest.mark.asyncio
async def test_batches_are_spaced_out():
    state = new_state()
    async with test_utils.TestServer(make_app(state)) as server:
        client = make_client(server, batch_size=1, batch_delay_ms=50)
        try:
            await client.lookup_batch(["alice", "carol", "dave"])
        finally:
            await client.close()

    times = state["times"]
    assert len(times) == 3
    assert all(later - earlier >= 0.045 for earlier, later in zip(times, times[1:]))


@pytest.mark.asyncio
async def test_contribute_posts_compact_entry():
    state = new_state()
    info = LocationInfo(location="Norway", device="Web App", timestamp_ms=1_700_000_000_500)
    async with test_utils.TestServer(make_app(state)) as server:
        client = make_client(server)
        try:
            assert await client.contribute("Alice", info) is True
            assert await client.contribute("empty", LocationInfo()) is False
        finally:
            await client.close()

    assert state["contributions"] == [
        {"username": "alice", "l": "Norway", "d": "Web App", "a": True, "t": 1_700_000_000}
    ]


@pytest.mark.asyncio
async def test_rejected_contribution():
    state = new_state(contribute_status=403)
    async with test_utils.TestServer(make_app(state)) as server:
        client = make_client(server)
        try:
            assert await client.contribute("alice", LocationInfo(location="Norway")) is False
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_server_stats():
    async with test_utils.TestServer(make_app(new_state())) as server:
        client = make_client(server)
        try:
            stats = await client.server_stats()
        finally:
            await client.close()

    assert stats == {"total_entries": 1234, "total_contributions": 56}
