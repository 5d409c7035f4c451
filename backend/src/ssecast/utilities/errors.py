class SSECastError(Exception):
    """Base class for every error raised by ssecast."""


class StoreUnavailableError(SSECastError):
    """The backing store could not be reached or rejected the operation."""


class ReplayError(SSECastError):
    """History could not be read while resuming a session."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"replay of channel {channel!r} failed: {message}")
        self.channel = channel


class SlowConsumerError(SSECastError):
    """A live buffer overflowed; the consumer must reconnect and resume."""


class InvalidMessageError(SSECastError, ValueError):
    """A published message could not be resolved into a (type, payload) pair."""


class NotInTestModeError(SSECastError, RuntimeError):
    """Recorded events were requested while the hub is not in test mode."""
