"""
Live fan-out across processes through Redis pub/sub.

Without a bridge each process only delivers its own publishes live; other
processes' events reach their clients on the next replay. With a bridge the
publisher sends every recorded event to one Redis channel, and a listener in
each process hands what it receives to the local router, including the
events this process published itself.
"""

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from ..schemas import Event
from ..utilities.constants import KEY_PREFIX
from ..utilities.errors import StoreUnavailableError
from .router import BroadcastRouter

logger = logging.getLogger("ssecast.bridge")


class RedisBridge:
    def __init__(self, redis: Redis, router: BroadcastRouter, key_prefix: str = KEY_PREFIX):
        self.redis = redis
        self.router = router
        self.channel = f"{key_prefix}live"
        self._pubsub: Optional[PubSub] = None
        self._listener: Optional[asyncio.Task] = None

    @property
    def listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def start(self) -> None:
        if self.listening:
            return
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.ensure_future(self._listen(self._pubsub))
        logger.info("Listening for live events on %s", self.channel)

    async def _listen(self, pubsub: PubSub):
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    event = Event.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning("Ignoring malformed live event on %s: %s", self.channel, e)
                    continue
                self.router.publish_live(event.channel, event)
        except RedisError as e:
            # sessions keep working from history; live events from other processes stop
            logger.error("Live listener on %s stopped: %s", self.channel, e)

    async def send(self, event: Event) -> int:
        """Broadcast a recorded event to every listening process."""
        try:
            return await self.redis.publish(self.channel, event.model_dump_json())
        except RedisError as e:
            # the event is recorded, clients still get it when they resume
            logger.error("Live broadcast of event %d on %s failed: %s", event.id, event.channel, e)
            raise StoreUnavailableError(f"could not broadcast to channel {event.channel!r}: {e}") from e

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
            logger.info("Stopped listening on %s", self.channel)
