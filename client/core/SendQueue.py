from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, Optional, Sequence, Union

from client.core.MessageTypes import SendState
from shared.config import DEFAULT_SEND_INTERVAL
from shared.log import get_logger

logger = get_logger(__name__)

Transmit = Callable[[str], None]
IsOpen = Callable[[], bool]


class SendQueue:
    """
    FIFO, rate-limited outbound queue for one connection.

    State is either IDLE (next message goes out immediately) or WINDOW_OPEN
    (a message went out less than ``interval`` seconds ago; new messages wait
    in ``pending``). A single timer handle closes the window; when it fires the
    head of the queue is transmitted and the window reopens, otherwise the
    queue returns to IDLE.

    Messages are never queued while the connection is down: sends without an
    open transport are dropped with a debug log.
    """

    def __init__(self, transmit: Transmit, is_open: IsOpen, interval: float = DEFAULT_SEND_INTERVAL) -> None:
        self._transmit = transmit
        self._is_open = is_open
        self.interval = interval
        self.state = SendState.IDLE
        self.pending: Deque[str] = deque()
        self._wakeup: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self._is_open()

    def send(self, data: Union[str, Sequence[str]]) -> None:
        """Send one message or a batch, preserving order across the batch."""
        if not (data and self.is_open):
            logger.debug(
                "Failed to send data: %s",
                "disconnected from the server" if data else "no data to send",
            )
            return

        messages = [data] if isinstance(data, str) else data
        for message in messages:
            self._send_one(message)

    def _send_one(self, message: str) -> None:
        if not message:
            logger.debug("Failed to send data: no data to send")
            return
        if self.state is SendState.WINDOW_OPEN:
            self.pending.append(message)
            return
        self._transmit_now(message)

    def _transmit_now(self, message: str) -> None:
        self._transmit(message)
        self.state = SendState.WINDOW_OPEN
        self._wakeup = asyncio.get_running_loop().call_later(self.interval, self._on_window_expired)

    def _on_window_expired(self) -> None:
        self._wakeup = None
        if self.pending and self.is_open:
            self._transmit_now(self.pending.popleft())
            return
        if self.pending:
            logger.debug("Dropping %d queued messages: disconnected from the server", len(self.pending))
            self.pending.clear()
        self.state = SendState.IDLE

    def close(self) -> None:
        """Cancel the throttle timer and drop anything still queued."""
        self._closed = True
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        if self.pending:
            logger.debug("Discarding %d unsent messages", len(self.pending))
        self.pending.clear()
        self.state = SendState.IDLE
