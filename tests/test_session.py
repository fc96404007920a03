"""
hashhello - Peer session tests.

Exercises a single ``PeerSession`` directly, without a registry.
"""

import pytest

from hashhello.codec import MessageCodec
from hashhello.connection_fsm import SessionEvent, SessionState
from hashhello.errors import HandshakeError, NetworkError
from hashhello.message import ImagePayload, Message, Sender, TextPayload
from hashhello.protocol import Protocol
from hashhello import crypto
from hashhello.session import PeerSession
from hashhello.transport import EVENT_CLOSE, MemoryHandle


@pytest.fixture
def session(alice, bob):
    return PeerSession(bob.numeric_id, alice, MessageCodec())


@pytest.mark.asyncio
async def test_message_before_secure_is_dropped(session):
    frame = Protocol.create_message(crypto.encrypt_message("early", bytes(32)))
    await session.dispatch(SessionEvent.MSG_RECEIVED, frame)

    assert session.messages == []
    assert session.state == SessionState.CONNECTING


@pytest.mark.asyncio
async def test_send_requires_secure_session(session):
    with pytest.raises(HandshakeError):
        await session.send(TextPayload("too soon"))
    assert session.messages == []


def test_append_tracks_unread_and_preview(session):
    session.append(Message(Sender.PEER, TextPayload("hi"), 10))
    session.append(Message(Sender.SELF, TextPayload("hello"), 5))
    assert session.unread == 1
    assert session.last_activity >= 10
    assert session.last_message == "hello"

    session.active = True
    session.append(Message(Sender.PEER, ImagePayload("data:"), 20))
    assert session.unread == 1
    assert session.last_message == "📷 Image"

    session.mark_read()
    assert session.unread == 0


@pytest.mark.asyncio
async def test_stale_handle_events_are_discarded(session, until):
    first = MemoryHandle(session.peer_id)
    second = MemoryHandle(session.peer_id)

    session.attach(first, initiator=False)
    session._on_transport_event(first, EVENT_CLOSE, None)
    session.attach(second, initiator=False)
    await session.wait_idle()

    assert session.handle is second
    assert session.state == SessionState.CONNECTING

    session._on_transport_event(second, EVENT_CLOSE, None)
    await session.wait_idle()
    assert session.state == SessionState.DISCONNECTED
    await session.close()


@pytest.mark.asyncio
async def test_attach_closes_replaced_handle(session, until):
    first = MemoryHandle(session.peer_id)
    second = MemoryHandle(session.peer_id)

    session.attach(first, initiator=False)
    session.attach(second, initiator=False)
    await until(lambda: first.is_closed)

    assert not second.is_closed
    assert session.handle is second
    await session.close()


@pytest.mark.asyncio
async def test_close_is_idempotent(session):
    handle = MemoryHandle(session.peer_id)
    session.attach(handle, initiator=False)

    await session.close()
    await session.close()

    assert session.is_closed
    assert session.handle is None
    assert handle.is_closed
    assert not session.begin_reconnect()
    with pytest.raises(NetworkError):
        session.attach(MemoryHandle(session.peer_id), initiator=False)


def test_snapshot_round_trip(alice, session):
    session.append(Message(Sender.PEER, TextPayload("saved"), 1000))
    data = session.to_snapshot()

    assert data["id"] == session.peer_id
    assert data["status"] == "disconnected"
    assert data["unread"] == 1
    assert data["lastMessage"] == "saved"

    restored = PeerSession.from_snapshot(session.peer_id, data, alice, MessageCodec())
    assert restored.state == SessionState.DISCONNECTED
    assert restored.messages == session.messages
    assert restored.unread == 1
    assert restored.last_activity == session.last_activity
    assert restored.handle is None


def test_from_snapshot_skips_bad_messages(alice, bob):
    data = {
        "messages": [
            {"sender": "them", "content": {"type": "text", "content": "ok"}, "timestamp": 1},
            {"sender": "???", "content": "bad", "timestamp": 2},
            {"content": "no sender"},
        ],
        "timestamp": 5,
    }
    restored = PeerSession.from_snapshot(bob.numeric_id, data, alice, MessageCodec())

    assert len(restored.messages) == 1
    assert restored.last_message == "ok"
    assert restored.unread == 0
