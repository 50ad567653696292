from __future__ import annotations

from typing import List, Protocol, runtime_checkable


@runtime_checkable
class MessageSink(Protocol):
    """Receives every protocol line the core does not interpret itself."""

    def on_message(self, roomid: str, message_type: str, fields: List[str]) -> None:
        ...


@runtime_checkable
class PageSink(Protocol):
    """Receives the raw body of ``view-`` page payloads."""

    def on_page(self, roomid: str, body: str) -> None:
        ...
