from __future__ import annotations

from typing import Callable

from client.core.MessageTypes import (
    DEFAULT_ROOM,
    INIT_PREFIX,
    PAGE_ROOM_PREFIX,
    ROOM_MARKER,
    USERS_PREFIX,
)
from client.core.Sinks import PageSink
from client.errors import FatalClientError
from shared.log import get_logger
from shared.utils import to_room_id

logger = get_logger(__name__)

LineParser = Callable[[str, str], None]


class MessageFramer:
    """
    Splits one inbound socket payload into (roomid, line) pairs.

    A payload looks like:

        >roomid
        |type|field|field
        |type|field

    The optional ``>roomid`` line sets the room for the rest of the payload
    (default ``lobby``). ``view-`` rooms carry page documents, so their body
    goes to the page sink untouched.

    When a room is joined the server bursts ``|init|`` followed by the full
    backlog; only the init line and the first ``|users|`` line after it are
    parsed and the rest of that payload is dropped.
    """

    def __init__(self, parse_line: LineParser, page_sink: PageSink) -> None:
        self._parse_line = parse_line
        self._page_sink = page_sink

    def on_payload(self, raw: str) -> None:
        if not raw:
            return

        roomid = DEFAULT_ROOM
        if "\n" not in raw:
            self._parse_line(roomid, raw)
            return

        lines = raw.split("\n")
        if lines[0].startswith(ROOM_MARKER):
            roomid = to_room_id(lines.pop(0)[len(ROOM_MARKER):])

        if roomid.startswith(PAGE_ROOM_PREFIX):
            try:
                self._page_sink.on_page(roomid, "\n".join(lines))
            except FatalClientError:
                raise
            except Exception:
                logger.exception("Page sink failed", extra={"roomid": roomid})
            return

        for index, line in enumerate(lines):
            if line.startswith(INIT_PREFIX):
                self._parse_line(roomid, line)
                users = next((rest for rest in lines[index + 1:] if rest.startswith(USERS_PREFIX)), None)
                if users is not None:
                    self._parse_line(roomid, users)
                skipped = len(lines) - index - 1 - (users is not None)
                if skipped:
                    logger.debug("Skipped %d backlog lines after init", skipped, extra={"roomid": roomid})
                return
            if line:
                self._parse_line(roomid, line)
