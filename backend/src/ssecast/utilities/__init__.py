from .config import Settings
from .errors import (
    InvalidMessageError,
    NotInTestModeError,
    ReplayError,
    SlowConsumerError,
    SSECastError,
    StoreUnavailableError,
)
from .utility_functions import (
    format_cursor,
    make_frame,
    make_heartbeat,
    make_stats,
    now_ts,
    parse_cursor,
    utcnow,
)
