from datetime import datetime
from typing import Any, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..utilities.constants import DEFAULT_EVENT_TYPE
from ..utilities.errors import InvalidMessageError
from ..utilities.utility_functions import utcnow


def check_event_type(v: str) -> str:
    # the type ends up on an "event:" line of the stream
    if not v or "\n" in v or "\r" in v:
        raise ValueError("event type must be a non-empty single line")
    return v


class Event(BaseModel):
    """An immutable event recorded on a channel."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1)
    channel: str
    type: str = DEFAULT_EVENT_TYPE
    payload: str
    published_at: datetime = Field(default_factory=utcnow)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return check_event_type(v)


class TypedMessage(BaseModel):
    """A payload published with an explicit event type."""

    model_config = ConfigDict(frozen=True)

    type: str
    payload: str

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return check_event_type(v)


Message = Union[str, bytes, Mapping[str, Any], TypedMessage]


def _as_text(payload: Any) -> str:
    if isinstance(payload, bytes):
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidMessageError("bytes payloads must be UTF-8") from e
    if isinstance(payload, str):
        return payload
    raise InvalidMessageError(f"payload must be str or bytes, not {type(payload).__name__}")


def resolve_message(message: Message, default_type: str = DEFAULT_EVENT_TYPE) -> TypedMessage:
    """Normalize the accepted message shapes into a TypedMessage.

    - ``"hi"`` or ``b"hi"``: payload with the default type
    - ``{"notice": "hi"}``: single-entry mapping of type to payload
    - ``TypedMessage(type="notice", payload="hi")``: used as is
    """
    if isinstance(message, TypedMessage):
        return message
    if isinstance(message, Mapping):
        if len(message) != 1:
            raise InvalidMessageError(
                f"a mapping message needs exactly one type -> payload entry, got {len(message)}"
            )
        ((event_type, payload),) = message.items()
        event_type, payload = str(event_type), _as_text(payload)
    else:
        event_type, payload = default_type, _as_text(message)
    try:
        return TypedMessage(type=event_type, payload=payload)
    except ValidationError as e:
        raise InvalidMessageError(f"invalid event type {event_type!r}") from e
