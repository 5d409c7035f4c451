"""
Redis-backed event store.

Each channel uses three keys under the configured prefix:

- ``<prefix><channel>:id``       counter incremented for every event
- ``<prefix><channel>:history``  sorted set of events scored by id, each
                                 member is ``<id>|<event JSON without id>``
- ``<prefix><channel>:times``    sorted set of ids scored by publish time,
                                 only maintained when a max age is set

An append runs as one Lua script: the id is taken and the entry written in
a single step, so no reader, in this process or another, ever sees an id
before every lower id of the channel is readable.
"""

import json
import logging
from typing import List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..schemas import Event
from ..utilities.constants import KEY_PREFIX
from ..utilities.errors import StoreUnavailableError
from ..utilities.utility_functions import utcnow
from .store import EventStore, Retention, check_channel

logger = logging.getLogger("ssecast.redis_store")

# KEYS: id, history, times
# ARGV: event body, max entries, now timestamp, age cutoff timestamp ("" when unset)
APPEND_SCRIPT = """
local id = redis.call('INCR', KEYS[1])
local keep = tonumber(ARGV[2])
redis.call('ZADD', KEYS[2], id, id .. '|' .. ARGV[1])
redis.call('ZREMRANGEBYRANK', KEYS[2], 0, -(keep + 1))
if ARGV[4] ~= '' then
  redis.call('ZADD', KEYS[3], ARGV[3], id)
  redis.call('ZREMRANGEBYRANK', KEYS[3], 0, -(keep + 1))
  local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', ARGV[4])
  if #expired > 0 then
    local newest = 0
    for _, member in ipairs(expired) do
      newest = math.max(newest, tonumber(member))
    end
    redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', newest)
    redis.call('ZREMRANGEBYSCORE', KEYS[3], '-inf', ARGV[4])
  end
end
return id
"""


def decode_member(member) -> Event:
    if isinstance(member, bytes):
        member = member.decode("utf-8")
    event_id, _, body = member.partition("|")
    return Event.model_validate({**json.loads(body), "id": int(event_id)})


class RedisEventStore(EventStore):
    def __init__(
        self,
        redis: Redis,
        retention: Optional[Retention] = None,
        key_prefix: str = KEY_PREFIX,
        owns_connection: bool = False,
    ):
        super().__init__(retention)
        self.redis = redis
        self.key_prefix = key_prefix
        self._owns_connection = owns_connection
        self._append = redis.register_script(APPEND_SCRIPT)

    @classmethod
    def from_url(cls, url: str, retention: Optional[Retention] = None, key_prefix: str = KEY_PREFIX) -> "RedisEventStore":
        return cls(Redis.from_url(url), retention, key_prefix, owns_connection=True)

    def _key(self, channel: str, suffix: str) -> str:
        return f"{self.key_prefix}{check_channel(channel)}:{suffix}"

    async def append(self, channel: str, type: str, payload: str) -> Event:
        keys = [self._key(channel, "id"), self._key(channel, "history"), self._key(channel, "times")]
        now = utcnow()
        cutoff = self.retention.cutoff(now)
        # validated with a stand-in id, the real one is assigned by the script
        draft = Event(id=1, channel=channel, type=type, payload=payload, published_at=now)
        args = [
            draft.model_dump_json(exclude={"id"}),
            self.retention.max_entries,
            repr(now.timestamp()),
            repr(cutoff.timestamp()) if cutoff is not None else "",
        ]
        try:
            event_id = await self._append(keys=keys, args=args)
        except RedisError as e:
            logger.error("Failed to append to channel %s: %s", channel, e)
            raise StoreUnavailableError(f"could not append to channel {channel!r}: {e}") from e
        event = draft.model_copy(update={"id": int(event_id)})
        logger.debug("Appended event %d to channel %s", event.id, channel)
        return event

    async def read_since(self, channel: str, last_id: int) -> List[Event]:
        try:
            members = await self.redis.zrangebyscore(self._key(channel, "history"), f"({last_id}", "+inf")
        except RedisError as e:
            raise StoreUnavailableError(f"could not read channel {channel!r}: {e}") from e
        events = [decode_member(m) for m in members]
        cutoff = self.retention.cutoff(utcnow())
        if cutoff is not None:
            events = [e for e in events if e.published_at >= cutoff]
        return events

    async def latest_id(self, channel: str) -> Optional[int]:
        try:
            value = await self.redis.get(self._key(channel, "id"))
        except RedisError as e:
            raise StoreUnavailableError(f"could not read channel {channel!r}: {e}") from e
        return int(value) if value is not None else None

    async def close(self) -> None:
        if self._owns_connection:
            await self.redis.aclose()
