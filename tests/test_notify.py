import pytest

from conftest import BrokenSocket, FakeSocket
from matchmaking.notify import Event, NotificationDispatcher, frame
from matchmaking.sessions import SessionRegistry


def test_frame_shape():
    assert frame(Event.MATCH_FOUND, {"conversationId": 3}) == {
        "event": "match-found",
        "data": {"conversationId": 3},
    }
    assert frame(Event.MATCH_ERROR, None) == {"event": "match-error", "data": {}}


@pytest.mark.asyncio
async def test_push_to_bound_session():
    reg = SessionRegistry()
    sock = FakeSocket()
    reg.bind("u", sock)
    assert await NotificationDispatcher(reg).push("u", Event.MATCH_CANCELED, {"success": True})
    assert sock.frames == [{"event": "match-canceled", "data": {"success": True}}]


@pytest.mark.asyncio
async def test_push_without_session_is_dropped():
    assert await NotificationDispatcher(SessionRegistry()).push("ghost", Event.MATCH_FOUND) is False


@pytest.mark.asyncio
async def test_transport_failure_never_raises():
    reg = SessionRegistry()
    reg.bind("u", BrokenSocket())
    dispatcher = NotificationDispatcher(reg)
    assert await dispatcher.push("u", Event.MATCH_FOUND, {}) is False
    assert await dispatcher.reply(BrokenSocket(), Event.MATCH_ERROR, {"message": "x"}) is False
