import abc
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional

from ..schemas import Event
from ..utilities.constants import HISTORY_MAX_AGE, HISTORY_SIZE
from ..utilities.utility_functions import utcnow

logger = logging.getLogger("ssecast.store")


@dataclass(frozen=True)
class Retention:
    """How much history each channel keeps.

    ``max_entries`` always applies; ``max_age`` (seconds) additionally
    evicts events older than the window when set.
    """

    max_entries: int = HISTORY_SIZE
    max_age: Optional[float] = HISTORY_MAX_AGE

    def __post_init__(self):
        if self.max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if self.max_age is not None and self.max_age <= 0:
            raise ValueError("max_age must be positive")

    def cutoff(self, now: datetime) -> Optional[datetime]:
        if self.max_age is None:
            return None
        return now - timedelta(seconds=self.max_age)


def check_channel(channel: str) -> str:
    if not channel:
        raise ValueError("channel name must not be empty")
    return channel


class EventStore(abc.ABC):
    """Ordered, bounded history of events per channel."""

    def __init__(self, retention: Optional[Retention] = None):
        self.retention = retention or Retention()

    @abc.abstractmethod
    async def append(self, channel: str, type: str, payload: str) -> Event:
        """Record an event under the next id of ``channel`` and return it."""

    @abc.abstractmethod
    async def read_since(self, channel: str, last_id: int) -> List[Event]:
        """Return retained events of ``channel`` with an id above ``last_id``, oldest first."""

    @abc.abstractmethod
    async def latest_id(self, channel: str) -> Optional[int]:
        """Id of the newest event ever assigned on ``channel``, or None."""

    async def close(self) -> None:
        pass


class ChannelLog:
    """History of one channel held in process memory."""

    def __init__(self, name: str, retention: Retention):
        self.name = name
        self.retention = retention
        self.history: Deque[Event] = deque(maxlen=retention.max_entries)
        self.last_id = 0
        self.lock = asyncio.Lock()

    def evict_expired(self, now: datetime):
        cutoff = self.retention.cutoff(now)
        if cutoff is None:
            return
        while self.history and self.history[0].published_at < cutoff:
            self.history.popleft()

    def since(self, last_id: int, now: datetime) -> List[Event]:
        cutoff = self.retention.cutoff(now)
        return [
            e for e in self.history
            if e.id > last_id and (cutoff is None or e.published_at >= cutoff)
        ]


class MemoryEventStore(EventStore):
    """Event store for a single process; history is lost on restart."""

    def __init__(self, retention: Optional[Retention] = None):
        super().__init__(retention)
        self._logs: Dict[str, ChannelLog] = {}

    def _log(self, channel: str) -> ChannelLog:
        log = self._logs.get(channel)
        if log is None:
            log = self._logs[channel] = ChannelLog(channel, self.retention)
        return log

    async def append(self, channel: str, type: str, payload: str) -> Event:
        log = self._log(check_channel(channel))
        async with log.lock:
            now = utcnow()
            event = Event(id=log.last_id + 1, channel=channel, type=type, payload=payload, published_at=now)
            # the deque drops the oldest entry once max_entries is reached
            log.history.append(event)
            log.last_id = event.id
            log.evict_expired(now)
        logger.debug("Appended event %d to channel %s", event.id, channel)
        return event

    async def read_since(self, channel: str, last_id: int) -> List[Event]:
        log = self._logs.get(check_channel(channel))
        if log is None:
            return []
        # entries are only published to the deque once fully built
        return log.since(last_id, utcnow())

    async def latest_id(self, channel: str) -> Optional[int]:
        log = self._logs.get(check_channel(channel))
        if log is None or log.last_id == 0:
            return None
        return log.last_id
