"""
Tests for live fan-out between processes through Redis pub/sub.
"""

import asyncio

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from conftest import RecordingSink, take, wait_registered
from ssecast import BroadcastRouter, EventHub, RedisBridge, RedisEventStore, Retention, StoreUnavailableError


def make_hub(server):
    """One process worth of hub sharing the Redis server."""
    redis = FakeRedis(server=server)
    bridge = RedisBridge(redis, BroadcastRouter(), key_prefix="test:")
    return EventHub(RedisEventStore(redis, Retention(max_entries=50), key_prefix="test:"), bridge=bridge)


async def wait_for(condition, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def hubs():
    server = FakeServer()
    first, second = make_hub(server), make_hub(server)
    await first.start()
    await second.start()
    yield first, second
    await first.close()
    await second.close()


class TestRedisBridge:

    @pytest.mark.asyncio
    async def test_session_on_other_process_gets_live_event(self, hubs):
        first, second = hubs
        session = second.subscribe(["global"])
        pending = asyncio.ensure_future(session.events().__anext__())
        await wait_registered(second.router, "global")

        await first.publish("global", {"notice": "from first"})

        event = await asyncio.wait_for(pending, 1)
        assert (event.id, event.type, event.payload) == (1, "notice", "from first")
        session.close()

    @pytest.mark.asyncio
    async def test_publishing_process_gets_event_once(self, hubs):
        first, _ = hubs
        sink = RecordingSink()
        first.router.subscribe("global", sink)

        await first.publish("global", "one")
        await first.publish("global", "two")

        await wait_for(lambda: len(sink.events) == 2)
        await asyncio.sleep(0.05)
        assert [e.payload for e in sink.events] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_ids_stay_in_order_across_processes(self, hubs):
        first, second = hubs
        session = second.subscribe(["global"])
        events = session.events()
        pending = asyncio.ensure_future(events.__anext__())
        await wait_registered(second.router, "global")

        for i in range(3):
            await first.publish("global", f"a{i}")
            await second.publish("global", f"b{i}")

        received = [await asyncio.wait_for(pending, 1)] + await take(events, 5)
        assert [e.id for e in received] == [1, 2, 3, 4, 5, 6]
        session.close()

    @pytest.mark.asyncio
    async def test_close_stops_listener(self):
        hub = make_hub(FakeServer())
        await hub.start()
        assert hub.bridge.listening
        await hub.close()
        assert not hub.bridge.listening

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_raised(self):
        redis = FakeRedis(connected=False)
        bridge = RedisBridge(redis, BroadcastRouter())
        hub = EventHub(bridge=bridge)
        with pytest.raises(StoreUnavailableError):
            await hub.publish("global", "recorded only")
        assert await hub.store.latest_id("global") == 1

    def test_bridge_must_feed_hub_router(self):
        bridge = RedisBridge(FakeRedis(), BroadcastRouter())
        with pytest.raises(ValueError):
            EventHub(router=BroadcastRouter(), bridge=bridge)
