"""
Configuration loaded from environment variables with sensible defaults.
"""

from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_EVENT_TYPE,
    HEARTBEAT_INTERVAL,
    HISTORY_MAX_AGE,
    HISTORY_SIZE,
    KEY_PREFIX,
    SUBSCRIBER_QUEUE_SIZE,
)


class Settings(BaseSettings):
    """Event hub configuration."""

    model_config = SettingsConfigDict(env_prefix="SSECAST_")

    # Unset means history lives in process memory
    redis_url: Optional[str] = Field(default=None, description="Redis URL used to store channel history")
    key_prefix: str = Field(default=KEY_PREFIX, description="Prefix for history keys in Redis")
    redis_pubsub: bool = Field(
        default=False,
        description="Fan live events out to every process through Redis pub/sub; needs redis_url",
    )

    history_size: int = Field(default=HISTORY_SIZE, ge=1, description="Events kept per channel")
    history_max_age: Optional[float] = Field(
        default=HISTORY_MAX_AGE,
        description="Seconds an event stays replayable; unset disables time-based eviction",
    )

    default_event_type: str = Field(default=DEFAULT_EVENT_TYPE, description="Type of events published without one")
    subscriber_queue_size: int = Field(default=SUBSCRIBER_QUEUE_SIZE, ge=1, description="Live buffer per session")
    heartbeat_interval: float = Field(default=HEARTBEAT_INTERVAL, gt=0, description="Seconds between keep-alives")

    @field_validator("history_max_age")
    @classmethod
    def validate_max_age(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("history_max_age must be positive")
        return v

    @model_validator(mode="after")
    def validate_pubsub(self) -> "Settings":
        if self.redis_pubsub and not self.redis_url:
            raise ValueError("redis_pubsub requires redis_url")
        return self

    @field_validator("default_event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        if not v or "\n" in v or "\r" in v:
            raise ValueError("default_event_type must be a non-empty single line")
        return v
