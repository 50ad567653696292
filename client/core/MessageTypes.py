from __future__ import annotations

from enum import Enum


class MessageType(str, Enum):
    """Protocol message types the core interprets itself; everything else goes to the MessageSink."""

    CHALLSTR = "challstr"        # Login challenge, one per connection
    UPDATEUSER = "updateuser"    # |updateuser|NAME|LOGINSTATUS|AVATAR...
    NAMETAKEN = "nametaken"      # |nametaken|NAME|REASON


class ConnectionState(str, Enum):
    """Lifecycle of the client's socket."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class SendState(str, Enum):
    """Throttle state of a SendQueue."""
    IDLE = "idle"
    WINDOW_OPEN = "window_open"


# Framing
DEFAULT_ROOM = "lobby"
ROOM_MARKER = ">"
PAGE_ROOM_PREFIX = "view-"
INIT_PREFIX = "|init|"
USERS_PREFIX = "|users|"

# Login handshake
AUTOJOIN_LIMIT = 11
MIN_LOGIN_RESPONSE_LENGTH = 50
LOGIN_REJECTED_BODY = ";"
OVERLOAD_MARKER = "heavy load"
LOGIN_RESPONSE_PREFIX = "]"
LOGGED_IN_STATUS = "1"
INAPPROPRIATE_MARKER = "inappropriate"