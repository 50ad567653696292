from __future__ import annotations
import asyncio
from contextlib import suppress
from typing import Optional, Sequence, Set, Union

import websockets
from websockets.protocol import State

from client.core.LoginClient import LoginClient
from client.core.MessageFramer import MessageFramer
from client.core.MessageTypes import DEFAULT_ROOM, ConnectionState
from client.core.ProtocolHandler import FatalHook, ProtocolHandler
from client.core.SendQueue import SendQueue
from client.core.Sinks import MessageSink, PageSink
from client.errors import FatalClientError
from shared.config import ClientConfig
from shared.log import get_logger
from shared.utils import to_room_id

logger = get_logger(__name__)


class Connection:
    """
    One open websocket plus the per-socket protocol state.

    Owns its SendQueue, ProtocolHandler (challstr, pending joins) and
    MessageFramer exclusively. A reconnect builds a fresh Connection; an old
    one is never reused.
    """

    def __init__(
        self,
        websocket: websockets.ClientConnection,
        config: ClientConfig,
        message_sink: MessageSink,
        page_sink: PageSink,
        login_client: LoginClient,
        on_fatal: Optional[FatalHook] = None,
    ) -> None:
        self.websocket = websocket
        self.queue = SendQueue(self._transmit, lambda: self.is_open, interval=config.send_interval)
        self.handler = ProtocolHandler(config, self.send, message_sink, login_client, on_fatal)
        self.framer = MessageFramer(self.handler.parse_line, page_sink)
        self._writes: Set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    def send(self, data: Union[str, Sequence[str]]) -> None:
        self.queue.send(data)

    def _transmit(self, message: str) -> None:
        # Writes start in creation order, so queue order is socket order
        task = asyncio.create_task(self._write(message))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _write(self, message: str) -> None:
        try:
            await self.websocket.send(message)
            logger.debug(f"Sent {message!r}")
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"Connection closed while sending {message!r}")
        except Exception as e:
            logger.error(f"Error sending message: {e}")

    async def recv_loop(self) -> None:
        """Feed every inbound text frame to the framer until the socket closes."""
        async for raw in self.websocket:
            if isinstance(raw, bytes):
                try:
                    raw = raw.decode("utf-8")
                except UnicodeDecodeError:
                    logger.warning("Dropping non-UTF-8 binary frame")
                    continue
            try:
                self.framer.on_payload(raw)
            except FatalClientError:
                raise
            except Exception as e:
                logger.error(f"Failed to parse/process inbound frame: {e!r}")

    async def close(self) -> None:
        self.handler.detach()
        self.queue.close()
        try:
            await self.websocket.close(code=1000)
        except Exception as e:
            logger.error(f"Error closing connection: {e}")


class ConnectionManager:
    """
    Process-wide client: connects, reconnects and routes outbound traffic.

    Reconnect policy: after a failed connect or a close the operator did not
    ask for, a new connect is scheduled ``config.reconnect_time`` seconds
    later. There is no retry limit and no backoff growth; with reconnect_time
    of 0 the client stays disconnected instead.

    A deliberate disconnect() cancels a scheduled reconnect and makes an
    attempt that is already dialling drop its socket.
    """

    def __init__(
        self,
        config: ClientConfig,
        message_sink: MessageSink,
        page_sink: PageSink,
        login_client: Optional[LoginClient] = None,
    ) -> None:
        self.config = config
        self.message_sink = message_sink
        self.page_sink = page_sink
        self.login_client = login_client or LoginClient(config.login_url, timeout=config.login_timeout)

        self.state = ConnectionState.DISCONNECTED
        self.closed = False
        self.connection: Optional[Connection] = None
        self.fatal_error: Optional[FatalClientError] = None
        self.connect_attempts = 0

        self._recv_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._done = asyncio.Event()

    def _track_background_task(self, task: asyncio.Task) -> None:
        """Keep a strong reference to background tasks until completion."""
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ========================================
    #           LIFECYCLE
    # ========================================

    async def connect(self) -> None:
        """Open the websocket; on failure, schedule a retry if configured."""
        self.closed = False
        self.fatal_error = None
        self._done.clear()
        await self._open()

    async def _open(self) -> None:
        self._cancel_reconnect()
        if self.closed:
            return
        self.state = ConnectionState.CONNECTING
        self.connect_attempts += 1
        logger.info(f"Connecting to {self.config.server}:{self.config.port}...")
        try:
            websocket = await websockets.connect(
                self.config.url,
                ping_interval=15,
                ping_timeout=45,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"Connection failed: {e!r}")
            self.state = ConnectionState.DISCONNECTED
            self._schedule_reconnect()
            return

        if self.closed:
            # disconnect() ran while we were dialling
            await websocket.close(code=1000)
            self.state = ConnectionState.CLOSED
            self._done.set()
            return

        logger.info("Connected!")
        connection = Connection(
            websocket,
            self.config,
            self.message_sink,
            self.page_sink,
            self.login_client,
            on_fatal=self._fail,
        )
        self.connection = connection
        self.state = ConnectionState.CONNECTED
        self._recv_task = asyncio.create_task(self._receive(connection))

    async def _receive(self, connection: Connection) -> None:
        try:
            await connection.recv_loop()
        except FatalClientError as e:
            self._record_fatal(e)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f"Connection lost: {e}")
        except Exception as e:
            logger.error(f"Receive loop failed: {e!r}")
        finally:
            await connection.close()
            if self.connection is connection:
                self.connection = None
        logger.info("Connection closed")
        self._on_closed()

    def _on_closed(self) -> None:
        if self.closed:
            self.state = ConnectionState.CLOSED
            self._done.set()
            return
        self.state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        delay = self.config.reconnect_time
        if self.closed or not delay:
            self._done.set()
            return
        logger.info(f"Retrying in {delay} seconds...")
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self.closed:
            return
        self._track_background_task(asyncio.create_task(self._open()))

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    async def disconnect(self) -> None:
        """Close deliberately; no reconnect follows."""
        self.closed = True
        self._cancel_reconnect()
        connection = self.connection
        if connection is not None:
            await connection.close()
        recv_task = self._recv_task
        if recv_task is not None and recv_task is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await recv_task
        self.state = ConnectionState.CLOSED
        self._done.set()

    def _record_fatal(self, error: FatalClientError) -> None:
        logger.critical(str(error), extra={"nick": self.config.nick})
        self.fatal_error = error
        self.closed = True
        self._cancel_reconnect()

    def _fail(self, error: FatalClientError) -> None:
        """Fatal error from outside the receive loop (the login task)."""
        self._record_fatal(error)
        self._track_background_task(asyncio.create_task(self.disconnect()))

    async def wait_closed(self) -> None:
        """
        Wait until the client stops for good.

        Raises:
            FatalClientError: the error that stopped the client, if any
        """
        await self._done.wait()
        if self.fatal_error is not None:
            raise self.fatal_error

    async def run_forever(self) -> None:
        await self.connect()
        await self.wait_closed()

    # ========================================
    #           OUTBOUND
    # ========================================

    def send(self, data: Union[str, Sequence[str]]) -> None:
        connection = self.connection
        if connection is None:
            logger.debug("Failed to send data: disconnected from the server")
            return
        connection.send(data)

    def send_room(self, text: str, roomid: Optional[str] = None) -> None:
        """Send chat text to a room, defaulting to the configured primary room."""
        target = to_room_id(roomid) if roomid else (self.config.primary_room or DEFAULT_ROOM)
        self.send(f"{target}|{text}")

    def send_pm(self, user: str, text: str) -> None:
        self.send(f"|/pm {user}, {text}")
