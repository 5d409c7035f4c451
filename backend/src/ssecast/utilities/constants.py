# ------------ Config defaults ------------
SUBSCRIBER_QUEUE_SIZE = 50    # bounded per-session live buffer
HISTORY_SIZE = 100            # last N events to keep per channel
HISTORY_MAX_AGE = None        # seconds; None keeps events until pushed out by HISTORY_SIZE
HEARTBEAT_INTERVAL = 30       # seconds of silence before a keep-alive comment
DEFAULT_EVENT_TYPE = "message"
KEY_PREFIX = "ssecast:"       # namespace for history keys in the backing store
# --------------------------------
