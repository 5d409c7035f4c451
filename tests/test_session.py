"""
Tests for subscription sessions: replay, the switch to live delivery,
cancellation and error reporting.
"""

import asyncio

import pytest

from conftest import take, wait_registered
from ssecast import (
    EventHub,
    MemoryEventStore,
    ReplayError,
    Retention,
    SlowConsumerError,
    StoreUnavailableError,
    SubscriptionSession,
)


class GatedStore(MemoryEventStore):
    """Holds read_since open until the test releases it.

    With ``snapshot_first`` the history is captured before waiting, so events
    appended during the wait only reach the session live. Otherwise the
    history is captured after the wait and contains them too.
    """

    def __init__(self, snapshot_first):
        super().__init__(Retention(max_entries=100))
        self.snapshot_first = snapshot_first
        self.reading = asyncio.Event()
        self.gate = asyncio.Event()

    async def read_since(self, channel, last_id):
        snapshot = await super().read_since(channel, last_id)
        self.reading.set()
        await self.gate.wait()
        if self.snapshot_first:
            return snapshot
        return await super().read_since(channel, last_id)


class SlowLatestStore(MemoryEventStore):
    """Holds latest_id open once a session is registered on the channel."""

    def __init__(self):
        super().__init__(Retention(max_entries=100))
        self.router = None
        self.reading = asyncio.Event()
        self.gate = asyncio.Event()

    async def latest_id(self, channel):
        if self.router is not None and self.router.subscriber_count(channel):
            self.reading.set()
            await self.gate.wait()
        return await super().latest_id(channel)


class BrokenStore(MemoryEventStore):
    async def read_since(self, channel, last_id):
        raise StoreUnavailableError("connection refused")


class CollectingStreamSink:
    def __init__(self):
        self.events = []
        self.closed = False
        self.error = None

    async def deliver(self, event):
        self.events.append(event)

    async def close(self, exc=None):
        self.closed = True
        self.error = exc


class TestScenarios:

    @pytest.mark.asyncio
    async def test_fresh_session_waits_for_next_publish(self, hub):
        await hub.publish("global", {"notice": "before"})
        session = hub.subscribe(["global"])
        events = session.events()
        pending = asyncio.ensure_future(events.__anext__())
        await wait_registered(hub.router, "global")
        assert not pending.done()

        await hub.publish("global", {"notice": "hi"})
        event = await asyncio.wait_for(pending, 1)
        assert (event.id, event.type, event.payload) == (2, "notice", "hi")
        session.close()

    @pytest.mark.asyncio
    async def test_reconnect_replays_missed_events_then_goes_live(self, hub):
        for payload in ("one", "two", "three"):
            await hub.publish("global", payload)

        session = hub.subscribe(["global"], last_ids=1)
        events = session.events()
        replayed = await take(events, 2)
        assert [(e.id, e.payload) for e in replayed] == [(2, "two"), (3, "three")]
        assert session.state == SubscriptionSession.REPLAY

        pending = asyncio.ensure_future(events.__anext__())
        await asyncio.sleep(0)
        await hub.publish("global", "four")
        event = await asyncio.wait_for(pending, 1)
        assert (event.id, event.payload) == (4, "four")
        assert session.state == SubscriptionSession.LIVE
        session.close()


class TestReplayToLiveSwitch:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("snapshot_first", [True, False])
    async def test_no_gap_no_duplicate(self, snapshot_first):
        store = GatedStore(snapshot_first)
        hub = EventHub(store)
        await hub.publish("c", "e1")
        await hub.publish("c", "e2")

        session = hub.subscribe(["c"], last_ids=0)
        consumer = asyncio.ensure_future(take(session.events(), 5))
        await asyncio.wait_for(store.reading.wait(), 1)

        # appended while the replay read is in flight
        await hub.publish("c", "e3")
        await hub.publish("c", "e4")
        store.gate.set()
        await asyncio.sleep(0)
        await hub.publish("c", "e5")

        received = await asyncio.wait_for(consumer, 1)
        assert [e.payload for e in received] == ["e1", "e2", "e3", "e4", "e5"]
        assert [e.id for e in received] == [1, 2, 3, 4, 5]
        session.close()

    @pytest.mark.asyncio
    async def test_event_in_replay_and_live_buffer_is_delivered_once(self):
        store = GatedStore(snapshot_first=False)
        hub = EventHub(store)
        await hub.publish("c", "old")

        session = hub.subscribe(["c"], last_ids={"c": 1})
        consumer = asyncio.ensure_future(take(session.events(), 2))
        await asyncio.wait_for(store.reading.wait(), 1)
        await hub.publish("c", "during")
        store.gate.set()
        await asyncio.sleep(0)
        await hub.publish("c", "after")

        received = await asyncio.wait_for(consumer, 1)
        assert [e.payload for e in received] == ["during", "after"]
        session.close()


class TestSession:

    @pytest.mark.asyncio
    async def test_multiple_channels(self, hub):
        await hub.publish("a", "a1")
        await hub.publish("b", "b1")
        await hub.publish("a", "a2")

        session = hub.subscribe(["a", "b", "a"], last_ids={"a": 0, "b": 0})
        assert session.channels == ["a", "b"]
        replayed = await take(session.events(), 3)
        assert [(e.channel, e.id) for e in replayed] == [("a", 1), ("a", 2), ("b", 1)]
        assert session.cursor == {"a": 2, "b": 1}
        assert session.cursor_token() == "a:2,b:1"
        session.close()

    @pytest.mark.asyncio
    async def test_cursor_follows_each_delivered_event(self, hub):
        for i in range(3):
            await hub.publish("global", str(i))
        session = hub.subscribe(["global"], last_ids=0)
        events = session.events()
        await take(events, 1)
        assert session.cursor == {"global": 1}
        session.close()

    @pytest.mark.asyncio
    async def test_cursor_ahead_of_history_replays_from_start(self, hub):
        await hub.publish("global", "one")
        await hub.publish("global", "two")
        session = hub.subscribe(["global"], last_ids=10)
        assert [e.id for e in await take(session.events(), 2)] == [1, 2]
        session.close()

    @pytest.mark.asyncio
    async def test_cancellation_releases_registrations(self, hub):
        session = hub.subscribe(["a", "b"])
        consumer = asyncio.ensure_future(take(session.events(), 1, timeout=5))
        await wait_registered(hub.router, "b")

        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        assert hub.router.subscriber_count() == 0
        assert session.state == SubscriptionSession.CLOSED

    @pytest.mark.asyncio
    async def test_close_ends_live_stream(self, hub):
        session = hub.subscribe(["global"])
        events = session.events()
        pending = asyncio.ensure_future(events.__anext__())
        await wait_registered(hub.router, "global")

        session.close()
        session.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(pending, 1)
        assert hub.router.subscriber_count() == 0

        # other sessions are untouched
        other = hub.subscribe(["global"])
        pending = asyncio.ensure_future(other.events().__anext__())
        await wait_registered(hub.router, "global")
        await hub.publish("global", "still here")
        assert (await asyncio.wait_for(pending, 1)).payload == "still here"
        other.close()

    @pytest.mark.asyncio
    async def test_replay_failure_is_surfaced(self):
        hub = EventHub(BrokenStore())
        session = hub.subscribe(["global"], last_ids=0)
        with pytest.raises(ReplayError) as info:
            await take(session.events(), 1)
        assert info.value.channel == "global"
        assert isinstance(info.value.__cause__, StoreUnavailableError)
        assert hub.router.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_slow_consumer_ends_session(self):
        hub = EventHub(queue_size=2)
        session = hub.subscribe(["global"])
        events = session.events()
        pending = asyncio.ensure_future(events.__anext__())
        await wait_registered(hub.router, "global")

        for i in range(5):
            await hub.publish("global", str(i))

        assert (await asyncio.wait_for(pending, 1)).payload == "0"
        assert (await take(events, 1))[0].payload == "1"
        with pytest.raises(SlowConsumerError):
            await take(events, 1)
        assert hub.router.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_heartbeat_yields_none_when_idle(self, hub):
        session = hub.subscribe(["global"])
        assert await take(session.events(heartbeat=0.01), 1) == [None]
        session.close()

    @pytest.mark.asyncio
    async def test_events_can_only_be_started_once(self, hub):
        session = hub.subscribe(["global"])
        session.close()
        with pytest.raises(RuntimeError):
            await take(session.events(), 1)

    def test_needs_a_channel(self, hub):
        with pytest.raises(ValueError):
            hub.subscribe([])


class TestPump:

    @pytest.mark.asyncio
    async def test_pump_delivers_until_closed(self, hub):
        await hub.publish("global", "missed")
        sink = CollectingStreamSink()
        async with hub.subscribe(["global"], last_ids=0) as session:
            task = asyncio.ensure_future(session.pump(sink))
            await wait_registered(hub.router, "global")
            await hub.publish("global", "live")
            for _ in range(10):
                await asyncio.sleep(0)
        await asyncio.wait_for(task, 1)

        assert [e.payload for e in sink.events] == ["missed", "live"]
        assert sink.closed
        assert sink.error is None

    @pytest.mark.asyncio
    async def test_pump_reports_replay_error(self):
        hub = EventHub(BrokenStore())
        sink = CollectingStreamSink()
        await hub.subscribe(["global"], last_ids=0).pump(sink)
        assert sink.closed
        assert isinstance(sink.error, ReplayError)


class TestLiveEdgeCases:

    @pytest.mark.asyncio
    async def test_fresh_session_keeps_event_published_while_starting(self):
        store = SlowLatestStore()
        hub = EventHub(store)
        store.router = hub.router

        session = hub.subscribe(["global"])
        consumer = asyncio.ensure_future(take(session.events(), 2))
        await asyncio.wait_for(store.reading.wait(), 1)
        assert hub.router.subscriber_count("global") == 1

        await hub.publish("global", "after-registration")
        store.gate.set()
        await asyncio.sleep(0)
        await hub.publish("global", "next")

        received = await asyncio.wait_for(consumer, 1)
        assert [(e.id, e.payload) for e in received] == [(1, "after-registration"), (2, "next")]
        session.close()

    @pytest.mark.asyncio
    async def test_live_id_jump_is_filled_from_history(self, hub):
        await hub.publish("global", "seen")
        session = hub.subscribe(["global"])
        events = session.events()
        pending = asyncio.ensure_future(events.__anext__())
        await wait_registered(hub.router, "global")

        # recorded by another writer whose live broadcast has not arrived yet
        await hub.store.append("global", "message", "other writer")
        await hub.publish("global", "ours")

        first = await asyncio.wait_for(pending, 1)
        second = (await take(events, 1))[0]
        assert [(first.id, first.payload), (second.id, second.payload)] == [(2, "other writer"), (3, "ours")]
        assert session.cursor == {"global": 3}
        session.close()

    @pytest.mark.asyncio
    async def test_event_after_heartbeat_is_delivered(self, hub):
        session = hub.subscribe(["global"])
        events = session.events(heartbeat=0.01)
        assert await take(events, 2) == [None, None]

        await hub.publish("global", "after ticks")
        received = await take(events, 1)
        assert [e.payload for e in received] == ["after ticks"]
        session.close()
