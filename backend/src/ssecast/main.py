import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional, Sequence, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .models import ChannelPolicy, EventHub, SubscriptionSession
from .utilities import SSECastError, make_frame, make_heartbeat, make_stats, parse_cursor
from .utilities.constants import HEARTBEAT_INTERVAL

logger = logging.getLogger("ssecast.api")

ChannelSource = Union[ChannelPolicy, Callable[[Request], Sequence[str]]]


async def sse_stream(session: SubscriptionSession, heartbeat: Optional[float] = HEARTBEAT_INTERVAL) -> AsyncIterator[str]:
    """
    Render a session as text/event-stream frames.
    The id of every frame carries the cursor of all channels so the browser
    resumes the whole set with its Last-Event-ID.
    """
    try:
        async for event in session.events(heartbeat=heartbeat):
            if event is None:
                yield make_heartbeat()
                continue
            yield make_frame(event.type, event.payload, session.cursor_token())
    except SSECastError as e:
        # the client reconnects and resumes from its last id
        logger.warning("Stream on %s ended: %s", ", ".join(session.channels), e)
    finally:
        session.close()


def create_app(hub: EventHub, policy: ChannelSource, heartbeat_interval: float = HEARTBEAT_INTERVAL) -> FastAPI:
    channels_for = policy.channels if hasattr(policy, "channels") else policy

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await hub.start()
        try:
            yield
        finally:
            await hub.close()

    app = FastAPI(title="Server-Sent Events", lifespan=lifespan)
    app.state.hub = hub

    @app.get("/events")
    async def stream_events(request: Request, lastEventId: Optional[str] = None):
        channels = list(channels_for(request))
        if not channels:
            raise HTTPException(status_code=404, detail="no channels available")
        # browsers send the header on reconnect; the query parameter covers polyfills
        token = request.headers.get("last-event-id") or lastEventId
        try:
            last_ids = parse_cursor(token, channels)
        except ValueError as e:
            logger.warning("Ignoring Last-Event-ID %r: %s", token, e)
            last_ids = None
        session = hub.subscribe(channels, last_ids)
        return StreamingResponse(
            sse_stream(session, heartbeat_interval),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/health")
    async def rest_health():
        now = datetime.now(timezone.utc)
        started = hub.started_at or now
        return {
            "uptime_sec": int((now - started).total_seconds()),
            "channels": hub.router.channel_count,
            "subscribers": hub.router.subscriber_count(),
        }

    @app.get("/stats")
    async def rest_stats():
        return make_stats(hub.router.channel_stats())

    return app
