import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep test runs from writing logs/showdown-client.log
os.environ.setdefault("SHOWDOWN_LOG_FILE", "0")

from shared.config import ClientConfig


class RecordingSink:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, str, List[str]]] = []
        self.pages: List[Tuple[str, str]] = []

    def on_message(self, roomid: str, message_type: str, fields: List[str]) -> None:
        self.messages.append((roomid, message_type, list(fields)))

    def on_page(self, roomid: str, body: str) -> None:
        self.pages.append((roomid, body))


class FakeLoginClient:
    """Answers the login request with a canned body and records the call."""

    url = "https://login.invalid/action.php"

    def __init__(self, body: str = "", exc: Optional[Exception] = None) -> None:
        self.body = body
        self.exc = exc
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    async def request_assertion(self, userid: str, challstr: str, password: Optional[str] = None) -> str:
        self.calls.append((userid, challstr, password))
        if self.exc is not None:
            raise self.exc
        return self.body


def success_body(assertion: str = "a" * 60) -> str:
    return ']{"actionsuccess":true,"assertion":"%s"}' % assertion


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(server="127.0.0.1", nick="Test Bot", port=8000)
