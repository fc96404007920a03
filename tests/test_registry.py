"""
hashhello - Multi-session registry tests.

Two or more registries talk over an in-process ``MemoryNetwork``.
"""

import asyncio

import pytest

from hashhello.connection_fsm import SessionEvent, SessionState
from hashhello.errors import HandshakeError, IdentityMismatchError, InvalidPeerIdError
from hashhello.identity import IdentityManager
from hashhello.message import Sender, TextPayload
from hashhello.registry import MultiSessionRegistry
from hashhello.transport import MemoryNetwork


def _unused_id(*taken: str) -> str:
    for candidate in ("999999999", "888888888", "777777777"):
        if candidate not in taken:
            return candidate
    raise AssertionError("no free id")


def _registry(network, identity, numeric_id=None, handshake_timeout=5):
    transport = network.transport(numeric_id or identity.numeric_id)
    return MultiSessionRegistry(identity, transport, connect_timeout=1, handshake_timeout=handshake_timeout)


def _open_handles(registry):
    return sum(1 for handle in registry.transport.handles if handle.is_open)


async def _secure_pair(network, alice, bob, until):
    ra = _registry(network, alice)
    rb = _registry(network, bob)
    sa = await ra.dial(bob.numeric_id)
    await until(lambda: sa.is_secure and rb.get(alice.numeric_id) is not None)
    sb = rb.get(alice.numeric_id)
    await until(lambda: sb.is_secure)
    return ra, rb, sa, sb


@pytest.mark.asyncio
async def test_dial_establishes_secure_sessions(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    try:
        assert sa.state == SessionState.SECURE
        assert sb.state == SessionState.SECURE
        assert sa.shared_secret == sb.shared_secret
        assert sa.initiator and not sb.initiator
        assert sa.last_message == "Secure connection established"
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_dial_accepts_formatted_number(network, alice, bob, until):
    ra = _registry(network, alice)
    rb = _registry(network, bob)
    try:
        session = await ra.dial(bob.formatted_number)
        assert session.peer_id == bob.numeric_id
        await until(lambda: session.is_secure)
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
@pytest.mark.parametrize("number", ["", "12345", "1234567890", "abc"])
async def test_dial_rejects_invalid_numbers(network, alice, number):
    registry = _registry(network, alice)
    with pytest.raises(InvalidPeerIdError):
        await registry.dial(number)
    assert registry.sessions == {}


@pytest.mark.asyncio
async def test_dial_rejects_self(network, alice):
    registry = _registry(network, alice)
    with pytest.raises(InvalidPeerIdError):
        await registry.dial(alice.formatted_number)


@pytest.mark.asyncio
async def test_dial_reuses_existing_session(network, alice, bob, until):
    ra, rb, sa, _ = await _secure_pair(network, alice, bob, until)
    try:
        again = await ra.dial(bob.numeric_id)
        assert again is sa
        assert network.connect_attempts[bob.numeric_id] == 1
        assert len(ra.sessions) == 1
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_messages_flow_both_ways(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    received = []
    rb.on_message = lambda peer_id, message: received.append((peer_id, message))
    try:
        sent = await ra.send(bob.numeric_id, TextPayload("hello bob"))
        assert sent.sender == Sender.SELF
        await until(lambda: len(sb.messages) == 1)

        assert sb.messages[0].sender == Sender.PEER
        assert sb.messages[0].payload == TextPayload("hello bob")
        assert received == [(alice.numeric_id, sb.messages[0])]
        assert sb.last_message == "hello bob"

        await rb.send(alice.numeric_id, TextPayload("hi alice"))
        await until(lambda: len(sa.messages) == 2)
        assert [m.sender for m in sa.messages] == [Sender.SELF, Sender.PEER]
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_messages_arrive_in_order(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    try:
        for i in range(20):
            await ra.send(bob.numeric_id, TextPayload(f"message {i}"))
        await until(lambda: len(sb.messages) == 20)
        assert [m.payload.content for m in sb.messages] == [f"message {i}" for i in range(20)]
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_unread_counts_and_activate(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    changes = []
    rb.on_change = changes.append
    try:
        await ra.send(bob.numeric_id, TextPayload("one"))
        await ra.send(bob.numeric_id, TextPayload("two"))
        await until(lambda: len(sb.messages) == 2)
        assert sb.unread == 2
        assert rb.total_unread() == 2
        assert alice.numeric_id in changes

        assert rb.activate(alice.numeric_id) is sb
        assert sb.unread == 0
        assert sb.active

        await ra.send(bob.numeric_id, TextPayload("three"))
        await until(lambda: len(sb.messages) == 3)
        assert sb.unread == 0

        assert rb.activate(None) is None
        assert not sb.active
        await ra.send(bob.numeric_id, TextPayload("four"))
        await until(lambda: len(sb.messages) == 4)
        assert sb.unread == 1
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_send_without_session_or_secret(network, alice, bob):
    ra = _registry(network, alice)
    try:
        with pytest.raises(HandshakeError):
            await ra.send(bob.numeric_id, TextPayload("nobody home"))

        offline = await ra.dial(_unused_id(alice.numeric_id, bob.numeric_id))
        with pytest.raises(HandshakeError):
            await ra.send(offline.peer_id, TextPayload("still nobody"))
        assert offline.messages == []
    finally:
        await ra.close_all()


@pytest.mark.asyncio
async def test_unreachable_peer_goes_offline(network, alice, until):
    ra = _registry(network, alice)
    try:
        session = await ra.dial(_unused_id(alice.numeric_id))
        await until(lambda: session.state == SessionState.OFFLINE)
        assert session.status == "offline"
        assert session.shared_secret is None
        assert session.last_message == "Connecting..."
    finally:
        await ra.close_all()


@pytest.mark.asyncio
async def test_identity_mismatch_raises_alert(network, alice, bob, until):
    """A peer answering at a number its key does not hash to is rejected."""
    fake_id = _unused_id(alice.numeric_id, bob.numeric_id)
    ra = _registry(network, alice)
    rb = _registry(network, bob, numeric_id=fake_id)
    alerts = []
    ra.on_security_alert = lambda peer_id, error: alerts.append((peer_id, error))
    try:
        session = await ra.dial(fake_id)
        await until(lambda: session.state == SessionState.DISCONNECTED)

        assert session.shared_secret is None
        assert session.handle.is_closed
        assert len(alerts) == 1
        assert alerts[0][0] == fake_id
        assert isinstance(alerts[0][1], IdentityMismatchError)
        assert alerts[0][1].derived_id == bob.numeric_id
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_transport_close_disconnects_both_sides(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    try:
        await network.drop_connections(bob.numeric_id)
        await until(lambda: sa.state == SessionState.DISCONNECTED and sb.state == SessionState.DISCONNECTED)
        assert sa.shared_secret is None
        assert sb.shared_secret is None
        assert sa.status == "disconnected"

        with pytest.raises(HandshakeError):
            await sa.send(TextPayload("lost"))
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_reconnect_all_opens_one_connection_per_peer(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    try:
        await network.drop_connections(bob.numeric_id)
        await until(lambda: sa.state == SessionState.DISCONNECTED and sb.state == SessionState.DISCONNECTED)
        attempts = network.connect_attempts[bob.numeric_id]

        counts = await asyncio.gather(ra.reconnect_all(), ra.reconnect_all(), ra.network_restored())
        assert sum(counts) == 1
        assert network.connect_attempts[bob.numeric_id] == attempts + 1

        await until(lambda: sa.is_secure and sb.is_secure)
        assert sa.shared_secret == sb.shared_secret
        assert rb.get(alice.numeric_id) is sb

        await ra.send(bob.numeric_id, TextPayload("back again"))
        await until(lambda: len(sb.messages) == 1)
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_reconnect_all_skips_live_sessions(network, alice, bob, until):
    ra, rb, _, _ = await _secure_pair(network, alice, bob, until)
    try:
        assert await ra.reconnect_all() == 0
        assert network.connect_attempts[bob.numeric_id] == 1
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_dial_dead_session_reconnects(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    try:
        await network.drop_connections(alice.numeric_id)
        await until(lambda: sa.state == SessionState.DISCONNECTED and sb.state == SessionState.DISCONNECTED)

        assert await ra.dial(bob.numeric_id) is sa
        await until(lambda: sa.is_secure and sb.is_secure)
        assert network.connect_attempts[bob.numeric_id] == 2
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_duplicate_inbound_connection_is_closed(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    original = sa.handle
    try:
        extra = await rb.transport.connect(alice.numeric_id)
        await until(lambda: extra.is_closed)

        assert sa.handle is original
        assert sa.is_secure
        assert len(ra.sessions) == 1
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_simultaneous_dial_keeps_one_connection(network, alice, bob, until):
    ra = _registry(network, alice)
    rb = _registry(network, bob)
    try:
        sa, sb = await asyncio.gather(ra.dial(bob.numeric_id), rb.dial(alice.numeric_id))
        await until(lambda: sa.is_secure and sb.is_secure)
        await until(lambda: _open_handles(ra) == 1 and _open_handles(rb) == 1)

        assert sa.shared_secret == sb.shared_secret
        assert sa.handle.remote is sb.handle
        # The connection opened by the lower number survives
        lower, higher = (sa, sb) if alice.numeric_id < bob.numeric_id else (sb, sa)
        assert lower.initiator and not higher.initiator

        await ra.send(bob.numeric_id, TextPayload("first contact"))
        await until(lambda: len(sb.messages) == 1)
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_simultaneous_recovery_reconnects_both_sides(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    try:
        await sa.handle.close()
        await until(lambda: sa.state == SessionState.DISCONNECTED and sb.state == SessionState.DISCONNECTED)

        await asyncio.gather(ra.network_restored(), rb.network_restored())
        await until(lambda: sa.is_secure and sb.is_secure)
        await until(lambda: _open_handles(ra) == 1 and _open_handles(rb) == 1)
        assert sa.shared_secret == sb.shared_secret

        await rb.send(alice.numeric_id, TextPayload("back"))
        await until(lambda: len(sa.messages) == 1)
    finally:
        await ra.close_all()
        await rb.close_all()


@pytest.mark.asyncio
async def test_silent_peer_handshake_times_out(network, alice, until):
    silent_id = _unused_id(alice.numeric_id)
    silent = network.transport(silent_id)
    ra = _registry(network, alice, handshake_timeout=0.1)
    try:
        session = await ra.dial(silent_id)
        await until(lambda: session.state == SessionState.DISCONNECTED)

        assert session.handle.is_closed
        assert session.shared_secret is None
        assert session.machine.get_history()[-1].event == SessionEvent.HANDSHAKE_FAILED
    finally:
        await ra.close_all()
        await silent.close()


@pytest.mark.asyncio
async def test_inbound_without_syn_times_out(network, alice, until):
    silent = network.transport(_unused_id(alice.numeric_id))
    ra = _registry(network, alice, handshake_timeout=0.1)
    try:
        handle = await silent.connect(alice.numeric_id)
        await until(lambda: handle.is_closed)

        session = ra.get(silent.local_id)
        assert session.state == SessionState.DISCONNECTED
        assert not session.initiator
    finally:
        await ra.close_all()
        await silent.close()


@pytest.mark.asyncio
async def test_inbound_from_invalid_id_is_rejected(network, alice, until):
    ra = _registry(network, alice)
    stranger = network.transport("not-a-number")
    try:
        handle = await stranger.connect(alice.numeric_id)
        await until(lambda: handle.is_closed)
        assert ra.sessions == {}
    finally:
        await ra.close_all()


@pytest.mark.asyncio
async def test_sessions_are_independent(network, alice, bob, until):
    carol = IdentityManager().generate()

    ra = _registry(network, alice)
    rb = _registry(network, bob)
    rc = _registry(network, carol)
    try:
        to_bob = await ra.dial(bob.numeric_id)
        to_carol = await ra.dial(carol.numeric_id)
        await until(lambda: to_bob.is_secure and to_carol.is_secure)
        assert to_bob.shared_secret != to_carol.shared_secret

        await network.drop_connections(carol.numeric_id)
        await until(lambda: to_carol.state == SessionState.DISCONNECTED)
        assert to_bob.is_secure

        await ra.send(bob.numeric_id, TextPayload("only bob"))
        sb = rb.get(alice.numeric_id)
        await until(lambda: len(sb.messages) == 1)
        assert [s.peer_id for s in ra.chats()][0] == bob.numeric_id
    finally:
        await ra.close_all()
        await rb.close_all()
        await rc.close_all()


@pytest.mark.asyncio
async def test_snapshot_and_restore(network, alice, bob, until):
    ra, rb, sa, sb = await _secure_pair(network, alice, bob, until)
    try:
        await ra.send(bob.numeric_id, TextPayload("remember me"))
        await until(lambda: len(sb.messages) == 1)
        snapshot = rb.snapshot()
    finally:
        await ra.close_all()
        await rb.close_all()

    entry = snapshot[alice.numeric_id]
    assert entry["status"] == "disconnected"
    assert entry["unread"] == 1
    assert entry["lastMessage"] == "remember me"

    restored = MultiSessionRegistry(bob, MemoryNetwork().transport(bob.numeric_id))
    snapshot["not-an-id"] = {"messages": []}
    assert restored.restore(snapshot) == 1
    assert restored.restore(snapshot) == 0

    session = restored.get(alice.numeric_id)
    assert session.state == SessionState.DISCONNECTED
    assert session.shared_secret is None
    assert session.unread == 1
    assert session.messages == sb.messages
    assert restored.total_unread() == 1
