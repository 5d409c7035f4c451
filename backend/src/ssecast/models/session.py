"""
Per-client subscription: replay missed history, then follow live events.

The session registers its live buffer on every channel *before* reading
history. Live events published during the replay pile up in the buffer and
are delivered afterwards, skipping any id the replay already covered. This
closes the window between "what the store had" and "what arrives live":
each event reaches the client once, in id order per channel.
"""

import asyncio
import logging
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional, Protocol, Union

from ..schemas import Event
from ..utilities.constants import SUBSCRIBER_QUEUE_SIZE
from ..utilities.errors import ReplayError, SSECastError
from ..utilities.utility_functions import format_cursor
from .router import BroadcastRouter, QueueSink, Registration
from .store import EventStore, check_channel

logger = logging.getLogger("ssecast.session")

LastIds = Union[int, Mapping[str, int], None]


class StreamSink(Protocol):
    """Transport side of a session: writes events to the client."""

    async def deliver(self, event: Event) -> None: ...

    async def close(self, exc: Optional[BaseException] = None) -> None: ...


class SubscriptionSession:
    INIT, REPLAY, LIVE, CLOSED = "init", "replay", "live", "closed"

    def __init__(
        self,
        store: EventStore,
        router: BroadcastRouter,
        channels: Iterable[str],
        last_ids: LastIds = None,
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
    ):
        # keep the caller's order, drop repeats
        self.channels: List[str] = list(dict.fromkeys(check_channel(c) for c in channels))
        if not self.channels:
            raise ValueError("a session needs at least one channel")
        self.store = store
        self.router = router

        if last_ids is None:
            self._starts: Dict[str, int] = {}
        elif isinstance(last_ids, int):
            self._starts = {c: last_ids for c in self.channels}
        else:
            self._starts = {c: int(i) for c, i in last_ids.items() if c in self.channels}

        self._cursor: Dict[str, int] = {}
        self._sink = QueueSink(queue_size)
        self._registrations: List[Registration] = []
        self.state = self.INIT

    @property
    def cursor(self) -> Dict[str, int]:
        """Last delivered id per channel."""
        return dict(self._cursor)

    def cursor_token(self) -> str:
        """The cursor as a single Last-Event-Id value."""
        return format_cursor(self._cursor)

    async def __aenter__(self) -> "SubscriptionSession":
        return self

    async def __aexit__(self, *exc_info):
        self.close()

    async def events(self, heartbeat: Optional[float] = None) -> AsyncIterator[Optional[Event]]:
        """Yield missed events, then live ones, until the session ends.

        When ``heartbeat`` is set, ``None`` is yielded after that many seconds
        without an event so the transport can keep the connection alive.
        Raises ReplayError if history cannot be read and SlowConsumerError if
        the live buffer overflowed.
        """
        if self.state != self.INIT:
            raise RuntimeError(f"session is already {self.state}")
        self.state = self.REPLAY
        getter: Optional[asyncio.Future] = None
        try:
            # a channel started now resumes from the id that was latest before registering,
            # anything published after that point is replayed or arrives live
            for channel in self.channels:
                if channel not in self._starts:
                    self._starts[channel] = await self._latest_id(channel)
            if self.state == self.CLOSED:
                return
            # register before reading history so nothing published meanwhile is missed
            for channel in self.channels:
                self._registrations.append(self.router.subscribe(channel, self._sink))
            logger.info("Session opened on %s", ", ".join(self.channels))

            # every channel gets its starting cursor before the first event goes out
            histories = [(channel, await self._read_history(channel)) for channel in self.channels]
            for channel, history in histories:
                for event in history:
                    if self.state == self.CLOSED:
                        return
                    self._cursor[channel] = event.id
                    yield event

            if self.state == self.CLOSED:
                return
            self.state = self.LIVE
            while True:
                if heartbeat is None:
                    item = await self._sink.get()
                else:
                    # the pending get survives a timeout so no item is lost between ticks
                    if getter is None:
                        getter = asyncio.ensure_future(self._sink.get())
                    done, _ = await asyncio.wait({getter}, timeout=heartbeat)
                    if not done:
                        yield None
                        continue
                    item = getter.result()
                    getter = None
                if item is None:
                    return
                if isinstance(item, BaseException):
                    raise item
                cursor = self._cursor.get(item.channel, 0)
                if item.id <= cursor:
                    # already delivered by the replay
                    logger.debug("Skipping duplicate event %d on %s", item.id, item.channel)
                    continue
                if item.id > cursor + 1:
                    # ids are contiguous per channel; another writer recorded the missing ones first
                    for missed in await self._read_since(item.channel, cursor):
                        if missed.id >= item.id:
                            break
                        self._cursor[item.channel] = missed.id
                        yield missed
                self._cursor[item.channel] = item.id
                yield item
        finally:
            if getter is not None:
                getter.cancel()
            self._release()

    async def _latest_id(self, channel: str) -> int:
        try:
            return await self.store.latest_id(channel) or 0
        except Exception as e:
            logger.error("Reading latest id of channel %s failed: %s", channel, e)
            raise ReplayError(channel, str(e)) from e

    async def _read_history(self, channel: str) -> List[Event]:
        start = self._starts[channel]
        latest = await self._latest_id(channel)
        if start > latest:
            # the id belongs to a history that no longer exists, resend what is there
            logger.info("Cursor %d on %s is ahead of latest id %d, replaying from start", start, channel, latest)
            start = 0

        self._cursor[channel] = start
        return await self._read_since(channel, start)

    async def _read_since(self, channel: str, last_id: int) -> List[Event]:
        try:
            events = await self.store.read_since(channel, last_id)
        except Exception as e:
            logger.error("Replay of channel %s failed: %s", channel, e)
            raise ReplayError(channel, str(e)) from e
        return [e for e in events if e.id > last_id]

    async def pump(self, sink: StreamSink) -> None:
        """Deliver this session to ``sink`` until it ends.

        Session errors are handed to ``sink.close`` instead of being raised.
        """
        error: Optional[BaseException] = None
        try:
            async for event in self.events():
                await sink.deliver(event)
        except SSECastError as e:
            error = e
        finally:
            self.close()
        await sink.close(error)

    def close(self) -> None:
        """End the session; safe to call more than once."""
        if self.state == self.CLOSED:
            return
        self.state = self.CLOSED
        self._sink.close()
        self._release()

    def _release(self):
        for registration in self._registrations:
            self.router.unsubscribe(registration)
        if self._registrations:
            logger.info("Session closed on %s", ", ".join(self.channels))
        self._registrations = []
        self.state = self.CLOSED
