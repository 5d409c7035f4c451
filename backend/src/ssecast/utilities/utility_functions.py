import re
from datetime import datetime, timezone
from typing import Dict, Iterable, Mapping, Optional
from urllib.parse import quote, unquote


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Server -> browser frames are built as text, one event per frame
def make_frame(event_type: str, payload: str, event_id: Optional[str] = None) -> str:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event_type}")
    # one data field per line; only CR, LF and CRLF end a line in an event stream
    for line in re.split(r"\r\n|\r|\n", payload):
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def make_heartbeat() -> str:
    return ":\n\n"


def make_stats(channels: Mapping[str, int]) -> dict:
    return {"channels": {name: {"subscribers": n} for name, n in channels.items()}, "ts": now_ts()}


def format_cursor(cursor: Mapping[str, int]) -> str:
    """Encode per-channel cursors as one Last-Event-Id value.

    >>> format_cursor({"global": 3, "user:1": 7})
    'global:3,user%3A1:7'
    """
    return ",".join(f"{quote(channel, safe='')}:{last_id}" for channel, last_id in cursor.items())


def parse_cursor(token: Optional[str], channels: Iterable[str]) -> Optional[Dict[str, int]]:
    """Decode a Last-Event-Id value produced by :func:`format_cursor`.

    A bare integer is applied to every channel. Channels missing from the
    token are left out of the result so the session starts them now.
    Raises ValueError on a malformed token.
    """
    if token is None:
        return None
    token = token.strip()
    if not token:
        return None
    channels = list(channels)
    if token.isdigit():
        return {channel: int(token) for channel in channels}

    wanted = set(channels)
    cursor: Dict[str, int] = {}
    for part in token.split(","):
        name, sep, value = part.rpartition(":")
        if not sep or not name or not value.isdigit():
            raise ValueError(f"malformed cursor segment {part!r}")
        channel = unquote(name)
        if channel in wanted:
            cursor[channel] = int(value)
    return cursor
