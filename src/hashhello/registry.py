"""
hashhello - Multi-session registry.

Owns every ``PeerSession``: dialing and accepting connections, at most one
session per peer, the recency-ordered chat list, unread tracking and the
reconnection sweep. Listeners are told about changes so the caller can
persist them.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .codec import MessageCodec
from .connection_fsm import DEAD_STATES, SessionState
from .constants import CONNECT_TIMEOUT, HANDSHAKE_TIMEOUT, RECONNECT_INTERVAL
from .errors import HandshakeError, InvalidPeerIdError, NetworkError, PeerUnreachableError
from .identity import Identity
from .message import Message, MessagePayload
from .session import PeerSession
from .transport import Transport, TransportHandle
from .utils import normalize_dial_input, validate_numeric_id

logger = logging.getLogger(__name__)


class MultiSessionRegistry:
    """
    Registry of peer sessions for the local identity.

    Attributes:
        identity: Local identity
        transport: Transport used to dial peers
        sessions: Mapping of peer id to session
        active_peer: Peer id of the session currently being viewed
    """

    def __init__(self, identity: Identity, transport: Transport,
                 codec: Optional[MessageCodec] = None,
                 reconnect_interval: float = RECONNECT_INTERVAL,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 handshake_timeout: float = HANDSHAKE_TIMEOUT):
        self.identity = identity
        self.transport = transport
        self.codec = codec or MessageCodec()
        self.reconnect_interval = reconnect_interval
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self.sessions: Dict[str, PeerSession] = {}
        self.active_peer: Optional[str] = None
        self._dialing: Set[str] = set()

        self.on_change: Optional[Callable[[str], None]] = None
        self.on_message: Optional[Callable[[str, Message], None]] = None
        self.on_security_alert: Optional[Callable[[str, HandshakeError], None]] = None

        self.transport.on_connection(self.accept)

    def _validate_peer_id(self, raw: str) -> str:
        peer_id = normalize_dial_input(raw)
        if not validate_numeric_id(peer_id):
            raise InvalidPeerIdError(
                "Invalid number. Please enter exactly 9 digits.", {"input": raw}
            )
        if peer_id == self.identity.numeric_id:
            raise InvalidPeerIdError("You cannot connect to yourself.", {"input": raw})
        return peer_id

    def _create_session(self, peer_id: str) -> PeerSession:
        session = PeerSession(peer_id, self.identity, self.codec)
        self._register(session)
        return session

    def _register(self, session: PeerSession) -> None:
        session.active = session.peer_id == self.active_peer
        session.handshake_timeout = self.handshake_timeout
        session.on_change = self._session_changed
        session.on_message = self._session_message
        session.on_security_alert = self._session_alert
        self.sessions[session.peer_id] = session

    async def dial(self, peer_id: str) -> PeerSession:
        """
        Open (or reuse) the session with a peer.

        Non-digit characters are stripped first. An existing session is
        returned as is; if it is disconnected or offline a single reconnect
        attempt is started.

        Raises:
            InvalidPeerIdError: If the number is not 9 digits or is our own
        """
        peer_id = self._validate_peer_id(peer_id)

        existing = self.sessions.get(peer_id)
        if existing is not None:
            if existing.state in DEAD_STATES:
                await self._reconnect(existing)
            return existing

        logger.info(f"Connecting to {peer_id}")
        session = self._create_session(peer_id)
        self._session_changed(session)
        await self._connect(session)
        return session

    async def _connect(self, session: PeerSession) -> None:
        peer_id = session.peer_id
        before = session.handle
        self._dialing.add(peer_id)
        try:
            handle = await asyncio.wait_for(self.transport.connect(peer_id), self.connect_timeout)
        except asyncio.TimeoutError:
            handle = None
            error: NetworkError = PeerUnreachableError(peer_id)
            logger.warning(f"Timed out connecting to {peer_id}")
        except NetworkError as e:
            handle = None
            error = e
            logger.warning(f"Could not connect to {peer_id}: {e.message}")
        finally:
            self._dialing.discard(peer_id)

        if session.is_closed or session.handle is not before:
            # Closed meanwhile, or the peer's own connection was accepted
            logger.info(f"Dropping outbound connection to {peer_id}")
            if handle is not None:
                await handle.close()
            return
        if handle is None:
            session.connect_failed(error)
            return
        session.attach(handle, initiator=True)

    def _inbound_wins(self, peer_id: str) -> bool:
        """
        Settle two crossing connections between the same pair of peers.

        The connection opened by the lower numeric id is kept, so both sides
        reach the same answer without talking to each other.
        """
        return peer_id < self.identity.numeric_id

    async def _reconnect(self, session: PeerSession) -> bool:
        if not session.begin_reconnect():
            return False
        logger.debug(f"Reconnecting to {session.peer_id}")
        await self._connect(session)
        return True

    def accept(self, handle: TransportHandle) -> Optional[PeerSession]:
        """
        Take an inbound connection.

        The session waits for the peer's syn. A dead session gets the new
        handle. If we are dialing the same peer, or our own connection is
        still handshaking, only one of the two crossing connections is kept
        (see ``_inbound_wins``). Any other connection from a peer whose
        session is live is closed as a duplicate.
        """
        peer_id = handle.peer_id
        if not validate_numeric_id(peer_id) or peer_id == self.identity.numeric_id:
            logger.warning(f"Rejecting inbound connection from invalid id {peer_id!r}")
            asyncio.ensure_future(handle.close())
            return None

        session = self.sessions.get(peer_id)
        if session is not None and session.machine.is_live():
            crossing = peer_id in self._dialing or (
                session.initiator and session.handle is not None and session.state != SessionState.SECURE
            )
            if crossing and self._inbound_wins(peer_id):
                logger.info(f"Crossing connections with {peer_id}; keeping the inbound one")
            elif crossing or session.handle is not None:
                logger.info(f"Closing duplicate connection from {peer_id}")
                asyncio.ensure_future(handle.close())
                return session

        if session is None:
            logger.info(f"Incoming connection from {peer_id}")
            session = self._create_session(peer_id)
        session.attach(handle, initiator=False)
        self._session_changed(session)
        return session

    def get(self, peer_id: str) -> Optional[PeerSession]:
        return self.sessions.get(peer_id)

    def chats(self) -> List[PeerSession]:
        """Sessions ordered by last activity, most recent first."""
        return sorted(self.sessions.values(), key=lambda s: s.last_activity, reverse=True)

    def total_unread(self) -> int:
        return sum(s.unread for s in self.sessions.values())

    def activate(self, peer_id: Optional[str]) -> Optional[PeerSession]:
        """
        Mark a session as the one being viewed and clear its unread count.

        Passing None deactivates the current session.
        """
        previous = self.sessions.get(self.active_peer) if self.active_peer else None
        if previous is not None:
            previous.active = False

        self.active_peer = peer_id
        session = self.sessions.get(peer_id) if peer_id else None
        if session is None:
            return None

        session.active = True
        if session.unread:
            session.mark_read()
            self._session_changed(session)
        return session

    async def send(self, peer_id: str, payload: MessagePayload) -> Message:
        """
        Send a payload to a peer.

        Raises:
            HandshakeError: If there is no secure session with the peer
            PayloadTooLargeError: If an attachment exceeds the size ceiling
        """
        session = self.sessions.get(peer_id)
        if session is None:
            raise HandshakeError(f"No session with {peer_id}", {"peer_id": peer_id})
        return await session.send(payload)

    async def reconnect_all(self) -> int:
        """
        Start one reconnect attempt for every disconnected or offline session.

        Returns:
            Number of sessions a reconnect was started for
        """
        targets = [s for s in self.sessions.values() if s.state in DEAD_STATES and not s.is_closed]
        count = 0
        for session in targets:
            if await self._reconnect(session):
                count += 1
        if count:
            logger.info(f"Reconnecting {count} session(s)")
        return count

    async def network_restored(self) -> int:
        return await self.reconnect_all()

    async def run_reconnect_loop(self, interval: Optional[float] = None) -> None:
        """Sweep dead sessions at a fixed interval until cancelled."""
        interval = self.reconnect_interval if interval is None else interval
        logger.debug("Reconnect loop started")
        try:
            while True:
                await asyncio.sleep(interval)
                if any(s.state in DEAD_STATES for s in self.sessions.values()):
                    await self.reconnect_all()
        except asyncio.CancelledError:
            logger.debug("Reconnect loop cancelled")
            raise

    def snapshot(self) -> Dict[str, Any]:
        """Persistable form of every session."""
        return {peer_id: s.to_snapshot() for peer_id, s in self.sessions.items()}

    def restore(self, snapshot: Dict[str, Any]) -> int:
        """
        Rebuild sessions from a snapshot, all disconnected.

        Entries for peers that already have a session, or that cannot be
        read, are skipped.

        Returns:
            Number of sessions restored
        """
        restored = 0
        for peer_id, data in (snapshot or {}).items():
            if peer_id in self.sessions or not validate_numeric_id(peer_id):
                continue
            try:
                session = PeerSession.from_snapshot(peer_id, data, self.identity, self.codec)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable session for {peer_id}: {e}")
                continue
            self._register(session)
            restored += 1
        logger.info(f"Restored {restored} session(s)")
        return restored

    async def close_all(self) -> None:
        for session in list(self.sessions.values()):
            await session.close()

    def _session_changed(self, session: PeerSession) -> None:
        if self.on_change:
            try:
                self.on_change(session.peer_id)
            except Exception as e:
                logger.error(f"Change listener error: {e}")

    def _session_message(self, session: PeerSession, message: Message) -> None:
        if self.on_message:
            try:
                self.on_message(session.peer_id, message)
            except Exception as e:
                logger.error(f"Message listener error: {e}")

    def _session_alert(self, session: PeerSession, error: HandshakeError) -> None:
        if self.on_security_alert:
            try:
                self.on_security_alert(session.peer_id, error)
            except Exception as e:
                logger.error(f"Security alert listener error: {e}")
