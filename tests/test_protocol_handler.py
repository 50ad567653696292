import asyncio
from dataclasses import replace

import httpx
import pytest

from client.core.MessageFramer import MessageFramer
from client.core.ProtocolHandler import ProtocolHandler, parse_frame
from client.errors import (
    FatalClientError,
    ForcedRenameError,
    GuestLoginError,
    LoginRejectedError,
    LoginServerError,
    LoginServerOverloadedError,
)

from conftest import FakeLoginClient, RecordingSink, success_body


class SentLog:
    def __init__(self) -> None:
        self.sent = []

    def __call__(self, data) -> None:
        if isinstance(data, str):
            self.sent.append(data)
        else:
            self.sent.extend(data)


def make_handler(config, sink, login_client=None, on_fatal=None):
    sent = SentLog()
    handler = ProtocolHandler(config, sent, sink, login_client or FakeLoginClient(success_body()), on_fatal)
    return handler, sent


ROOMS = [f"room{i}" for i in range(15)]


def test_parse_frame_splits_type_and_fields():
    frame = parse_frame("lobby", "|a|b|c")
    assert frame.message_type == "a"
    assert frame.fields == ["b", "c"]


def test_parse_frame_without_pipe_is_a_single_opaque_field():
    frame = parse_frame("lobby", "just some text")
    assert frame.message_type == ""
    assert frame.fields == ["just some text"]


def test_parse_frame_with_empty_type_keeps_whole_line():
    assert parse_frame("lobby", "||x").fields == ["||x"]


def test_unknown_types_are_forwarded_to_the_sink(config, sink):
    handler, sent = make_handler(config, sink)

    handler.parse_line("room1", "|c|~Someone|hello|world")
    handler.parse_line("room1", "plain text")

    assert sink.messages == [
        ("room1", "c", ["~Someone", "hello", "world"]),
        ("room1", "", ["plain text"]),
    ]
    assert sent.sent == []


def test_internal_types_are_not_forwarded(config, sink):
    handler, _ = make_handler(config, sink)

    handler.parse_line("lobby", "|updateuser| Guest 123|0|1")
    handler.parse_line("lobby", "|nametaken|Test Bot|Someone is already using it")

    assert sink.messages == []


@pytest.mark.asyncio
async def test_challstr_logs_in_with_autojoin_split(config, sink):
    config = replace(config, autojoin=tuple(ROOMS))
    login = FakeLoginClient(success_body("ASSERTION" * 8))
    handler, sent = make_handler(config, sink, login)

    handler.parse_line("lobby", "|challstr|4|abcdef")
    await handler.login_task

    assert login.calls == [("testbot", "4|abcdef", None)]
    assert handler.challstr == "4|abcdef"
    assert sent.sent == [
        "|/autojoin " + ",".join(ROOMS[:11]),
        "|/trn Test Bot,0," + "ASSERTION" * 8,
    ]
    assert handler.pending_joins == ROOMS[11:]


@pytest.mark.asyncio
async def test_confirmed_updateuser_joins_pending_rooms_in_order(config, sink):
    config = replace(config, autojoin=tuple(ROOMS), avatar="167")
    handler, sent = make_handler(config, sink)

    handler.parse_line("lobby", "|challstr|4|abcdef")
    await handler.login_task
    sent.sent.clear()

    handler.parse_line("lobby", "|updateuser| Test Bot|1|167|{}")

    assert sent.sent == ["|/avatar 167"] + [f"|/join {room}" for room in ROOMS[11:]]
    assert handler.pending_joins is None
    assert handler.logged_in is True


@pytest.mark.asyncio
async def test_short_autojoin_list_leaves_nothing_pending(config, sink):
    config = replace(config, autojoin=("lobby", "help"))
    handler, sent = make_handler(config, sink)

    handler.parse_line("lobby", "|challstr|4|abc")
    await handler.login_task

    assert sent.sent[0] == "|/autojoin lobby,help"
    assert handler.pending_joins is None


@pytest.mark.asyncio
async def test_no_autojoin_sends_only_trn(config, sink):
    handler, sent = make_handler(config, sink)

    handler.parse_line("lobby", "|challstr|4|abc")
    await handler.login_task

    assert len(sent.sent) == 1
    assert sent.sent[0].startswith("|/trn Test Bot,0,")


@pytest.mark.asyncio
async def test_password_is_passed_to_the_login_client(config, sink):
    config = replace(config, password="hunter2")
    login = FakeLoginClient(success_body())
    handler, _ = make_handler(config, sink, login)

    handler.parse_line("lobby", "|challstr|4|abc")
    await handler.login_task

    assert login.calls == [("testbot", "4|abc", "hunter2")]


def test_updateuser_for_other_name_is_ignored(config, sink):
    handler, sent = make_handler(config, sink)

    handler.parse_line("lobby", "|updateuser| Guest 4242|0|1")

    assert sent.sent == []
    assert handler.logged_in is False


def test_updateuser_still_guest_is_fatal(config, sink):
    handler, _ = make_handler(config, sink)

    with pytest.raises(GuestLoginError):
        handler.parse_line("lobby", "|updateuser|Test Bot|0|1")


def test_nametaken_inappropriate_is_fatal(config, sink):
    handler, _ = make_handler(config, sink)

    with pytest.raises(ForcedRenameError):
        handler.parse_line("lobby", "|nametaken|Test Bot|Your name was considered inappropriate by staff")


def test_nametaken_other_reason_is_not_fatal(config, sink):
    handler, sent = make_handler(config, sink)

    handler.parse_line("lobby", "|nametaken|Test Bot|Someone is already using the name")
    handler.parse_line("lobby", "|nametaken")

    assert sent.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, error",
    [
        (";", LoginRejectedError),
        ("Invalid challstr", LoginServerError),
        ("The login server is under heavy load, please try again in a few minutes.", LoginServerOverloadedError),
    ],
)
async def test_login_failures_reach_the_fatal_hook(config, sink, body, error):
    fatal = []
    handler, sent = make_handler(config, sink, FakeLoginClient(body), on_fatal=fatal.append)

    handler.parse_line("lobby", "|challstr|4|abc")
    await handler.login_task

    assert len(fatal) == 1
    assert type(fatal[0]) is error
    assert sent.sent == []


@pytest.mark.asyncio
async def test_login_transport_error_is_not_fatal(config, sink):
    fatal = []
    login = FakeLoginClient(exc=httpx.ConnectError("boom"))
    handler, sent = make_handler(config, sink, login, on_fatal=fatal.append)

    handler.parse_line("lobby", "|challstr|4|abc")
    await handler.login_task

    assert fatal == []
    assert sent.sent == []


class SlowLoginClient(FakeLoginClient):
    def __init__(self, body: str) -> None:
        super().__init__(body)
        self.release = asyncio.Event()

    async def request_assertion(self, userid, challstr, password=None):
        self.calls.append((userid, challstr, password))
        await self.release.wait()
        return self.body


@pytest.mark.asyncio
async def test_login_completing_after_detach_is_ignored(config, sink):
    login = SlowLoginClient(success_body())
    handler, sent = make_handler(config, sink, login)

    handler.parse_line("lobby", "|challstr|4|abc")
    await asyncio.sleep(0)
    handler.detach()
    login.release.set()
    await handler.login_task

    assert sent.sent == []


@pytest.mark.asyncio
async def test_second_challstr_supersedes_in_flight_login(config, sink):
    login = SlowLoginClient(success_body())
    handler, sent = make_handler(config, sink, login)

    handler.parse_line("lobby", "|challstr|4|first")
    first_task = handler.login_task
    await asyncio.sleep(0)
    handler.parse_line("lobby", "|challstr|4|second")
    second_task = handler.login_task
    login.release.set()
    await asyncio.gather(first_task, second_task)

    assert [c[1] for c in login.calls] == ["4|first", "4|second"]
    assert len(sent.sent) == 1
    assert handler.challstr == "4|second"


def test_challstr_after_login_is_ignored(config, sink):
    handler, _ = make_handler(config, sink)
    handler.logged_in = True

    handler.parse_line("lobby", "|challstr|4|again")

    assert handler.login_task is None
    assert handler.challstr == ""


class BrokenSink(RecordingSink):
    """Raises on one message type, records everything else."""

    def __init__(self, breaks_on: str, error: Exception) -> None:
        super().__init__()
        self.breaks_on = breaks_on
        self.error = error

    def on_message(self, roomid, message_type, fields):
        if message_type == self.breaks_on:
            raise self.error
        super().on_message(roomid, message_type, fields)


def test_failing_sink_does_not_drop_the_rest_of_the_payload(config):
    sink = BrokenSink("boom", RuntimeError("sink bug"))
    handler, _ = make_handler(config, sink)
    framer = MessageFramer(handler.parse_line, sink)

    framer.on_payload(">room1\n|c|A|one\n|boom|x\n|c|B|two\n|c|C|three")

    assert sink.messages == [
        ("room1", "c", ["A", "one"]),
        ("room1", "c", ["B", "two"]),
        ("room1", "c", ["C", "three"]),
    ]


def test_fatal_error_from_sink_still_propagates(config):
    sink = BrokenSink("boom", FatalClientError("stop"))
    handler, _ = make_handler(config, sink)

    with pytest.raises(FatalClientError):
        handler.parse_line("room1", "|boom|x")


@pytest.mark.asyncio
async def test_avatar_is_sent_once_per_login(config, sink):
    config = replace(config, avatar="167")
    handler, sent = make_handler(config, sink)

    handler.parse_line("lobby", "|challstr|4|abc")
    await handler.login_task
    sent.sent.clear()

    handler.parse_line("lobby", "|updateuser| Test Bot|1|167|{}")
    handler.parse_line("lobby", "|updateuser| Test Bot|1|167|{}")
    handler.parse_line("lobby", "|updateuser| Test Bot@!|1|169|{}")

    assert sent.sent == ["|/avatar 167"]
    assert handler.logged_in is True
