"""Server-Sent Events over named channels, with history replay for reconnecting clients."""

from .models import (
    BroadcastRouter,
    ChannelPolicy,
    EventHub,
    EventStore,
    MemoryEventStore,
    PublishedEvent,
    Publisher,
    RecordingPublisher,
    RedisBridge,
    RedisEventStore,
    Retention,
    StreamSink,
    SubscriptionSession,
)
from .schemas import Event, TypedMessage, resolve_message
from .utilities import (
    InvalidMessageError,
    NotInTestModeError,
    ReplayError,
    Settings,
    SlowConsumerError,
    SSECastError,
    StoreUnavailableError,
)

__version__ = "0.1.0"
