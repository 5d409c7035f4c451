import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Union

from ..schemas import Event
from ..utilities.constants import SUBSCRIBER_QUEUE_SIZE
from ..utilities.errors import SlowConsumerError
from .store import check_channel

logger = logging.getLogger("ssecast.router")


class Sink(Protocol):
    """Receives live events; ``deliver`` must return without blocking."""

    def deliver(self, event: Event) -> None: ...

    def close(self, exc: Optional[BaseException] = None) -> None: ...


class QueueSink:
    ''' Buffers live events for one consumer.'''

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        # the publisher never waits for a slow consumer:
        # once the buffer is full the sink fails and gets dropped by the router,
        # the consumer then resumes from its cursor instead of silently losing events
        self.queue: "asyncio.Queue[Union[Event, BaseException, None]]" = asyncio.Queue(maxsize=maxsize + 1)
        self.maxsize = maxsize
        self.closed = False

    def deliver(self, event: Event) -> None:
        if self.closed:
            return
        # the extra slot is reserved for the close marker
        if self.queue.qsize() >= self.maxsize:
            raise SlowConsumerError(f"live buffer of {self.maxsize} events overflowed")
        self.queue.put_nowait(event)

    def close(self, exc: Optional[BaseException] = None) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(exc)

    async def get(self) -> Union[Event, BaseException, None]:
        return await self.queue.get()


@dataclass(frozen=True)
class Registration:
    channel: str
    sink: Sink = field(compare=False)
    id: int = 0


class BroadcastRouter:
    """In-memory fan-out of freshly published events to live sinks."""

    def __init__(self):
        self._channels: Dict[str, Dict[int, Registration]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, channel: str, sink: Sink) -> Registration:
        registration = Registration(check_channel(channel), sink, next(self._ids))
        self._channels.setdefault(channel, {})[registration.id] = registration
        logger.debug("Registered sink %d on channel %s", registration.id, channel)
        return registration

    def unsubscribe(self, registration: Registration) -> None:
        registrations = self._channels.get(registration.channel)
        if not registrations or registrations.pop(registration.id, None) is None:
            return
        if not registrations:
            del self._channels[registration.channel]
        logger.debug("Removed sink %d from channel %s", registration.id, registration.channel)

    def publish_live(self, channel: str, event: Event) -> int:
        # snapshot so sinks may unsubscribe while we iterate
        registrations = list(self._channels.get(channel, {}).values())
        delivered = 0
        for registration in registrations:
            try:
                registration.sink.deliver(event)
            except Exception as e:
                # one failing sink never affects its siblings or the publisher
                logger.warning(
                    "Dropping sink %d on channel %s after delivery failure: %s", registration.id, channel, e
                )
                self.unsubscribe(registration)
                self._close_quietly(registration, e)
                continue
            delivered += 1
        return delivered

    def _close_quietly(self, registration: Registration, exc: BaseException):
        try:
            registration.sink.close(exc)
        except Exception:
            logger.exception("Error closing sink %d", registration.id)

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def subscriber_count(self, channel: Optional[str] = None) -> int:
        if channel is not None:
            return len(self._channels.get(channel, {}))
        return sum(len(r) for r in self._channels.values())

    def channel_stats(self) -> Dict[str, int]:
        return {name: len(registrations) for name, registrations in self._channels.items()}
