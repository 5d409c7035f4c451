import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Collection, Dict, List, NamedTuple, Optional, Tuple, Union

from ..schemas import Event, Message, resolve_message
from ..utilities.constants import DEFAULT_EVENT_TYPE
from .bridge import RedisBridge
from .router import BroadcastRouter
from .store import EventStore, check_channel

logger = logging.getLogger("ssecast.publisher")

TypeFilter = Union[str, Collection[str], Callable[[str], bool]]


class Publisher:
    """The single write path: record in history, then fan out live.

    Append and live delivery run under a per-channel lock so live events
    reach sessions in id order. Different channels never wait on each other.
    With a bridge, live delivery goes through Redis so every process gets it.
    """

    def __init__(
        self,
        store: EventStore,
        router: BroadcastRouter,
        default_type: str = DEFAULT_EVENT_TYPE,
        bridge: Optional[RedisBridge] = None,
    ):
        self.store = store
        self.router = router
        self.default_type = default_type
        self.bridge = bridge
        # channel -> (lock, number of publishes holding or waiting for it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _channel_lock(self, channel: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(channel, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[channel] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[channel]
            if users == 1:
                del self._locks[channel]
            else:
                self._locks[channel] = (lock, users - 1)

    async def publish(self, channel: str, message: Message) -> Optional[Event]:
        check_channel(channel)
        resolved = resolve_message(message, self.default_type)
        async with self._channel_lock(channel):
            # store errors propagate: a dropped publish would break replay for everyone
            event = await self.store.append(channel, resolved.type, resolved.payload)
            if self.bridge is not None:
                receivers = await self.bridge.send(event)
            else:
                receivers = self.router.publish_live(channel, event)
        logger.debug("Published %s event %d on %s to %d receivers", event.type, event.id, channel, receivers)
        return event


class PublishedEvent(NamedTuple):
    channel: str
    type: str
    payload: str


def make_type_filter(type_filter: Optional[TypeFilter]) -> Optional[Callable[[str], bool]]:
    """Accept a predicate, a single type, or a collection of types."""
    if type_filter is None or callable(type_filter):
        return type_filter
    if isinstance(type_filter, str):
        return lambda event_type: event_type == type_filter
    allowed = frozenset(type_filter)
    return lambda event_type: event_type in allowed


class RecordingPublisher:
    """Stands in for Publisher in tests: records events instead of sending them."""

    def __init__(self, default_type: str = DEFAULT_EVENT_TYPE, type_filter: Optional[TypeFilter] = None):
        self.default_type = default_type
        self.filter = make_type_filter(type_filter)
        self.published: List[PublishedEvent] = []

    async def publish(self, channel: str, message: Message) -> Optional[Event]:
        check_channel(channel)
        resolved = resolve_message(message, self.default_type)
        if self.filter is None or self.filter(resolved.type):
            self.published.append(PublishedEvent(channel, resolved.type, resolved.payload))
        return None
