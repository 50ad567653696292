from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Union

import httpx

from client.core.LoginClient import LoginClient, extract_assertion
from client.core.MessageTypes import (
    AUTOJOIN_LIMIT,
    INAPPROPRIATE_MARKER,
    LOGGED_IN_STATUS,
    MessageType,
)
from client.core.Sinks import MessageSink
from client.errors import FatalClientError, ForcedRenameError, GuestLoginError
from shared.log import get_logger, log_protocol_line
from shared.utils import to_id

if TYPE_CHECKING:
    from shared.config import ClientConfig

logger = get_logger(__name__)

Sender = Callable[[Union[str, Sequence[str]]], None]
FatalHook = Callable[[FatalClientError], None]


@dataclass(frozen=True)
class ParsedFrame:
    roomid: str
    message_type: str
    fields: List[str]


def parse_frame(roomid: str, line: str) -> ParsedFrame:
    """
    Split ``|type|a|b`` into ("type", ["a", "b"]).

    The segment before the first pipe is discarded. A line without a usable
    type (no pipe, or an empty type) becomes ("", [line]).
    """
    message_type, *fields = line.split("|")[1:] or [""]
    if not message_type:
        return ParsedFrame(roomid, "", [line])
    return ParsedFrame(roomid, message_type, fields)


class ProtocolHandler:
    """
    Interprets protocol lines for one connection.

    challstr, updateuser and nametaken drive the login handshake and are
    consumed here; every other message type is forwarded to the MessageSink.

    Handshake per connection:
        challstr  -> HTTP login -> /autojoin (first 11 rooms) -> /trn
        updateuser (logged in) -> /avatar, /join for the remaining rooms

    Fatal conditions raise FatalClientError subclasses. From parse_line they
    propagate to the caller (the receive loop); from the background login
    task they are passed to ``on_fatal``.
    """

    def __init__(
        self,
        config: "ClientConfig",
        send: Sender,
        message_sink: MessageSink,
        login_client: Optional[LoginClient] = None,
        on_fatal: Optional[FatalHook] = None,
    ) -> None:
        self.config = config
        self._send = send
        self._message_sink = message_sink
        self._login_client = login_client or LoginClient(config.login_url, timeout=config.login_timeout)
        self._on_fatal = on_fatal

        self.challstr = ""
        self.pending_joins: Optional[List[str]] = None
        self.logged_in = False
        self.login_task: Optional[asyncio.Task] = None
        self._login_generation = 0
        self._detached = False

        self._handlers: Dict[str, Callable[[ParsedFrame], None]] = {
            MessageType.CHALLSTR.value: self._handle_challstr,
            MessageType.UPDATEUSER.value: self._handle_updateuser,
            MessageType.NAMETAKEN.value: self._handle_nametaken,
        }

    def parse_line(self, roomid: str, line: str) -> None:
        frame = parse_frame(roomid, line)
        log_protocol_line(logger, frame.roomid, frame.message_type, frame.fields)

        handler = self._handlers.get(frame.message_type)
        if handler is None:
            try:
                self._message_sink.on_message(frame.roomid, frame.message_type, frame.fields)
            except FatalClientError:
                raise
            except Exception:
                logger.exception(
                    "Message sink failed on %r", line,
                    extra={"roomid": frame.roomid, "msg_type": frame.message_type or "-"},
                )
            return
        handler(frame)

    def detach(self) -> None:
        """Mark the owning connection as torn down; late login results are ignored."""
        self._detached = True
        self.pending_joins = None

    # ========================================
    #           LOGIN HANDSHAKE
    # ========================================

    def _handle_challstr(self, frame: ParsedFrame) -> None:
        if self.logged_in:
            logger.warning("Ignoring challstr: already logged in on this connection")
            return
        self.challstr = "|".join(frame.fields)
        self.pending_joins = None
        # A newer challstr supersedes any login still in flight
        self._login_generation += 1
        self.login_task = asyncio.create_task(self._run_login(self._login_generation, self.challstr))

    async def _run_login(self, generation: int, challstr: str) -> None:
        try:
            await self.login(challstr, generation)
        except FatalClientError as e:
            if self._is_stale(generation):
                logger.debug("Ignoring login failure for a stale connection: %s", e)
                return
            if self._on_fatal is None:
                raise
            self._on_fatal(e)
        except httpx.HTTPError as e:
            logger.error(f"Error while logging in: {e!r}", extra={"nick": self.config.nick})

    async def login(self, challstr: str, generation: Optional[int] = None) -> Optional[str]:
        """
        Run the HTTP half of the handshake and send /autojoin and /trn.

        Returns the assertion, or None if the connection went away meanwhile.
        """
        logger.debug(f"Sending login to {self._login_client.url}", extra={"nick": self.config.nick})
        body = await self._login_client.request_assertion(
            to_id(self.config.nick), challstr, self.config.password
        )
        if self._is_stale(generation):
            logger.debug("Discarding login response for a stale connection")
            return None

        assertion = extract_assertion(body, self.config.nick, bool(self.config.password))

        # Autojoin before /trn; the server only accepts eleven rooms here, the
        # rest are joined one by one once updateuser confirms the login.
        if self.config.autojoin:
            rooms = list(self.config.autojoin)
            autojoin, extra = rooms[:AUTOJOIN_LIMIT], rooms[AUTOJOIN_LIMIT:]
            self._send(f"|/autojoin {','.join(autojoin)}")
            if extra:
                self.pending_joins = extra
        self._send(f"|/trn {self.config.nick},0,{assertion}")
        return assertion

    def _is_stale(self, generation: Optional[int]) -> bool:
        if self._detached:
            return True
        return generation is not None and generation != self._login_generation

    def _handle_updateuser(self, frame: ParsedFrame) -> None:
        # The server sends updateuser once as a guest right after connecting
        # and again after /trn; only the latter carries our name.
        fields = frame.fields
        server_name = fields[0] if fields else ""
        login_status = fields[1] if len(fields) > 1 else ""
        if to_id(server_name) != to_id(self.config.nick):
            logger.debug(f"Ignoring updateuser for {server_name!r}")
            return
        if login_status != LOGGED_IN_STATUS:
            raise GuestLoginError(self.config.nick, login_status)

        if self.logged_in:
            # Echo of a later change (avatar, status); login already finished
            logger.debug(f"updateuser for {server_name!r} after login")
            return

        self.logged_in = True
        logger.info(f"Logged in as {self.config.nick}")
        if self.config.avatar:
            self._send(f"|/avatar {self.config.avatar}")
        if self.pending_joins:
            self._send([f"|/join {roomid}" for roomid in self.pending_joins])
        self.pending_joins = None

    def _handle_nametaken(self, frame: ParsedFrame) -> None:
        reason = frame.fields[1] if len(frame.fields) > 1 else ""
        if INAPPROPRIATE_MARKER in reason:
            raise ForcedRenameError(self.config.nick)
        logger.warning(f"NAMETAKEN: {frame.fields!r}", extra={"nick": self.config.nick})
