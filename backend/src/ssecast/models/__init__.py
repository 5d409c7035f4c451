from .bridge import RedisBridge
from .hub import ChannelPolicy, EventHub
from .publisher import PublishedEvent, Publisher, RecordingPublisher
from .redis_store import RedisEventStore
from .router import BroadcastRouter, QueueSink, Registration, Sink
from .session import StreamSink, SubscriptionSession
from .store import EventStore, MemoryEventStore, Retention
