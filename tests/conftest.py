import asyncio

import pytest

from ssecast import BroadcastRouter, EventHub, MemoryEventStore, Retention


class RecordingSink:
    """Live sink that keeps everything it is given."""

    def __init__(self):
        self.events = []
        self.closed_with = "open"

    def deliver(self, event):
        self.events.append(event)

    def close(self, exc=None):
        self.closed_with = exc


class FailingSink(RecordingSink):
    def deliver(self, event):
        raise RuntimeError("socket gone")


async def wait_registered(router, channel, count=1):
    """Let the loop run until ``count`` sinks are registered on ``channel``."""
    for _ in range(100):
        if router.subscriber_count(channel) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"no subscriber registered on {channel}")


async def take(events, n, timeout=1.0):
    """Pull ``n`` items from a session's event iterator."""
    out = []
    for _ in range(n):
        out.append(await asyncio.wait_for(events.__anext__(), timeout))
    return out


@pytest.fixture
def store():
    return MemoryEventStore(Retention(max_entries=5))


@pytest.fixture
def router():
    return BroadcastRouter()


@pytest.fixture
def hub():
    return EventHub(MemoryEventStore(Retention(max_entries=100)), queue_size=10)
