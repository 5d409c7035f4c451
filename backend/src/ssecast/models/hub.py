import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional, Protocol, Sequence, Union

from ..schemas import Event, Message
from ..utilities.config import Settings
from ..utilities.constants import DEFAULT_EVENT_TYPE, SUBSCRIBER_QUEUE_SIZE
from ..utilities.errors import NotInTestModeError
from ..utilities.utility_functions import utcnow
from .bridge import RedisBridge
from .publisher import PublishedEvent, Publisher, RecordingPublisher, TypeFilter, make_type_filter
from .redis_store import RedisEventStore
from .router import BroadcastRouter
from .session import LastIds, SubscriptionSession
from .store import EventStore, MemoryEventStore, Retention

logger = logging.getLogger("ssecast.hub")


class ChannelPolicy(Protocol):
    """Decides which channels a request may subscribe to.

    Implement ``channels`` and return the channel names the caller behind
    ``context`` (for example a FastAPI Request) has access to::

        class Channels:
            def channels(self, context):
                return ["global", f"user:{context.state.user_id}"]
    """

    def channels(self, context: Any) -> Sequence[str]:
        raise NotImplementedError(f"you must implement {type(self).__name__}.channels")


class EventHub:
    """Owns the store, router and publisher shared by every session.

    Create one at process start and pass it to whatever publishes or serves
    streams:

        hub = EventHub.from_settings(Settings())
        await hub.publish("global", {"notice": "This is a server-sent event."})
        await hub.publish("global", "Hello, World!")
    """

    def __init__(
        self,
        store: Optional[EventStore] = None,
        router: Optional[BroadcastRouter] = None,
        default_type: str = DEFAULT_EVENT_TYPE,
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
        bridge: Optional[RedisBridge] = None,
    ):
        self.store = store or MemoryEventStore()
        self.router = router or (bridge.router if bridge is not None else BroadcastRouter())
        if bridge is not None and bridge.router is not self.router:
            raise ValueError("the bridge must feed the hub's router")
        self.bridge = bridge
        self.default_type = default_type
        self.queue_size = queue_size
        self.publisher: Union[Publisher, RecordingPublisher] = Publisher(self.store, self.router, default_type, bridge)
        self.started_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventHub":
        retention = Retention(settings.history_size, settings.history_max_age)
        bridge = None
        if settings.redis_url:
            store: EventStore = RedisEventStore.from_url(settings.redis_url, retention, settings.key_prefix)
            if settings.redis_pubsub:
                bridge = RedisBridge(store.redis, BroadcastRouter(), settings.key_prefix)
        else:
            store = MemoryEventStore(retention)
        return cls(
            store,
            default_type=settings.default_event_type,
            queue_size=settings.subscriber_queue_size,
            bridge=bridge,
        )

    async def start(self) -> None:
        if self.bridge is not None:
            await self.bridge.start()
        self.started_at = utcnow()
        logger.info("Event hub started with %s", type(self.store).__name__)

    async def close(self) -> None:
        if self.bridge is not None:
            await self.bridge.close()
        await self.store.close()
        self.started_at = None
        logger.info("Event hub closed")

    async def publish(self, channel: str, message: Message) -> Optional[Event]:
        """Send ``message`` to every subscriber of ``channel``.

        ``message`` is either the payload, published with the default type,
        or a single-entry mapping ``{type: payload}``, or a TypedMessage.
        Callers may ignore the result; it is the recorded Event, handy for
        logging its id, or None in test mode. Raises StoreUnavailableError
        when the backing store cannot record the event.
        """
        return await self.publisher.publish(channel, message)

    def subscribe(self, channels: Iterable[str], last_ids: LastIds = None) -> SubscriptionSession:
        return SubscriptionSession(self.store, self.router, channels, last_ids, self.queue_size)

    # -------------- Test mode --------------

    def test_mode(self) -> None:
        """Record published events in :attr:`published` instead of sending them.

        Call before each test so earlier events are cleared.
        """
        self.publisher = RecordingPublisher(self.default_type)

    @property
    def test_filter(self) -> Optional[TypeFilter]:
        if isinstance(self.publisher, RecordingPublisher):
            return self.publisher.filter
        return None

    @test_filter.setter
    def test_filter(self, type_filter: Optional[TypeFilter]) -> None:
        """Only record events whose type passes the filter; implies test_mode()."""
        self.test_mode()
        self.publisher.filter = make_type_filter(type_filter)

    @property
    def published(self) -> List[PublishedEvent]:
        if not isinstance(self.publisher, RecordingPublisher):
            raise NotInTestModeError(f"call {type(self).__name__}.test_mode() first")
        return self.publisher.published
