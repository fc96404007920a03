"""
hashhello - Per-peer session runtime.

A ``PeerSession`` owns one peer's transport handle, state machine,
handshake, shared secret and message history. Transport events go into
the session's own queue and a worker task processes them in arrival
order, so one slow peer never holds up another.

Events are tagged with the handle that produced them; anything still
queued from a handle the session has since replaced is discarded.
"""

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .codec import MessageCodec
from .constants import HANDSHAKE_TIMEOUT
from .connection_fsm import DEAD_STATES, Effect, SessionEvent, SessionState, SessionStateMachine
from .errors import HandshakeError, IdentityMismatchError, NetworkError, PeerUnreachableError
from .handshake import Handshake
from .identity import Identity
from .message import Message, MessagePayload, Sender, now_ms, preview
from .protocol import FrameType, Protocol
from .transport import EVENT_CLOSE, EVENT_DATA, EVENT_ERROR, EVENT_OPEN, TransportHandle

logger = logging.getLogger(__name__)

_FRAME_EVENTS = {
    FrameType.HANDSHAKE_SYN: SessionEvent.SYN_RECEIVED,
    FrameType.HANDSHAKE_ACK: SessionEvent.ACK_RECEIVED,
    FrameType.MESSAGE: SessionEvent.MSG_RECEIVED,
}

# Status labels used in chat lists and persisted snapshots
STATUS_LABELS = {
    SessionState.CONNECTING: "connecting",
    SessionState.SYN_SENT: "connecting",
    SessionState.SYN_RECEIVED: "connecting",
    SessionState.SECURE: "secure",
    SessionState.DISCONNECTED: "disconnected",
    SessionState.OFFLINE: "offline",
}

_QueueItem = Tuple[Optional[TransportHandle], SessionEvent, Any]


class PeerSession:
    """
    State and history of the conversation with one peer.

    Attributes:
        peer_id: Remote numeric id
        handle: Current transport handle, if any
        shared_secret: AES-GCM key, present only while secure
        messages: Append-only message history
        last_activity: Timestamp (ms) of the last message or creation
        unread: Messages from the peer not yet viewed
        last_message: Preview text for chat lists
        active: Whether a consumer is currently viewing this session
    """

    def __init__(self, peer_id: str, identity: Identity, codec: MessageCodec,
                 state: SessionState = SessionState.CONNECTING):
        self.peer_id = peer_id
        self.identity = identity
        self.codec = codec
        self.machine = SessionStateMachine(state)
        self.handle: Optional[TransportHandle] = None
        self.initiator = False
        self.handshake: Optional[Handshake] = None
        self.shared_secret: Optional[bytes] = None

        self.messages: List[Message] = []
        self.last_activity = now_ms()
        self.unread = 0
        self.last_message = "Connecting..."
        self.active = False

        self.on_change: Optional[Callable[["PeerSession"], None]] = None
        self.on_message: Optional[Callable[["PeerSession", Message], None]] = None
        self.on_security_alert: Optional[Callable[["PeerSession", HandshakeError], None]] = None

        self.handshake_timeout = HANDSHAKE_TIMEOUT

        self._queue: Optional["asyncio.Queue[_QueueItem]"] = None
        self._worker: Optional[asyncio.Task] = None
        self._handshake_timer: Optional[asyncio.TimerHandle] = None
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self.machine.current_state

    @property
    def status(self) -> str:
        return STATUS_LABELS[self.state]

    @property
    def is_secure(self) -> bool:
        return self.state == SessionState.SECURE and self.shared_secret is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    # -- connection lifecycle -------------------------------------------

    def begin_reconnect(self) -> bool:
        """
        Move a dead session back to connecting.

        Returns:
            True if the session was disconnected or offline
        """
        if self._closed or self.state not in DEAD_STATES:
            return False
        effects = self.machine.transition(SessionEvent.RECONNECT)
        if Effect.NOTIFY in effects:
            self._notify_change()
        return True

    def attach(self, handle: TransportHandle, initiator: bool) -> None:
        """
        Bind a transport handle to the session and start listening to it.

        Any previous handle is closed; its pending events are discarded. A
        handshake still in progress on the previous handle starts over on
        the new one.
        """
        if self._closed:
            raise NetworkError(message=f"Session with {self.peer_id} is closed")

        previous = self.handle
        replaced = previous is not None and previous is not handle
        if self.state in DEAD_STATES:
            self.begin_reconnect()
        elif replaced:
            self.machine.transition(SessionEvent.REPLACED)

        if replaced:
            previous.set_listener(None)
            asyncio.ensure_future(previous.close())

        self.handle = handle
        self.initiator = initiator
        self.handshake = Handshake(self.identity, self.peer_id)
        self.shared_secret = None
        handle.set_listener(lambda event, data: self._on_transport_event(handle, event, data))
        self._ensure_worker()
        self._start_handshake_timer(handle)

        if initiator and handle.is_open:
            self._enqueue(handle, SessionEvent.OPENED)

    def _start_handshake_timer(self, handle: TransportHandle) -> None:
        self._cancel_handshake_timer()
        self._handshake_timer = asyncio.get_running_loop().call_later(
            self.handshake_timeout, self._handshake_expired, handle
        )

    def _cancel_handshake_timer(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None

    def _handshake_expired(self, handle: TransportHandle) -> None:
        self._handshake_timer = None
        if handle is not self.handle or self.is_secure or not self.machine.is_live():
            return
        logger.warning(f"Handshake with {self.peer_id} timed out after {self.handshake_timeout}s")
        self._enqueue(handle, SessionEvent.HANDSHAKE_FAILED)

    def connect_failed(self, error: Exception) -> None:
        """Report a failure to obtain a transport handle at all."""
        event = SessionEvent.UNREACHABLE if isinstance(error, PeerUnreachableError) else SessionEvent.ERROR
        self._enqueue(self.handle, event, error)

    def _on_transport_event(self, handle: TransportHandle, event: str, data: Any) -> None:
        if event == EVENT_OPEN:
            if self.initiator:
                self._enqueue(handle, SessionEvent.OPENED)
        elif event == EVENT_DATA:
            try:
                frame = Protocol.unpack_frame(data)
            except NetworkError as e:
                logger.warning(f"Dropping malformed frame from {self.peer_id}: {e.message}")
                return
            self._enqueue(handle, _FRAME_EVENTS[Protocol.frame_type(frame)], frame)
        elif event == EVENT_CLOSE:
            self._enqueue(handle, SessionEvent.CLOSED)
        elif event == EVENT_ERROR:
            if isinstance(data, PeerUnreachableError):
                self._enqueue(handle, SessionEvent.UNREACHABLE, data)
            else:
                logger.warning(f"Transport error for {self.peer_id}: {data}")
                self._enqueue(handle, SessionEvent.ERROR, data)
        else:
            logger.debug(f"Unknown transport event {event!r} from {self.peer_id}")

    def _enqueue(self, handle: Optional[TransportHandle], event: SessionEvent, data: Any = None) -> None:
        if self._closed:
            return
        self._ensure_worker()
        self._queue.put_nowait((handle, event, data))

    def _ensure_worker(self) -> None:
        # The queue binds to the running loop, so it is created on first use
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            while True:
                handle, event, data = await self._queue.get()
                try:
                    if handle is not self.handle:
                        logger.debug(f"Discarding {event.name} from stale handle for {self.peer_id}")
                        continue
                    await self.dispatch(event, data)
                except Exception as e:
                    logger.error(f"Error handling {event.name} for {self.peer_id}: {e}", exc_info=True)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.debug(f"Worker for {self.peer_id} cancelled")
            raise

    async def wait_idle(self) -> None:
        """Wait until every queued event has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def dispatch(self, event: SessionEvent, data: Any = None) -> None:
        """Apply an event to the state machine and run the resulting effects."""
        handle = self.handle
        effects = self.machine.transition(event)
        for effect in effects:
            await self._run_effect(effect, handle, data)

    async def _run_effect(self, effect: Effect, handle: Optional[TransportHandle], data: Any) -> None:
        if effect == Effect.SEND_SYN:
            await self._send_syn(handle)
        elif effect == Effect.PROCESS_HANDSHAKE:
            await self._process_handshake(handle, data)
        elif effect == Effect.DECRYPT_MESSAGE:
            self._receive_message(data)
        elif effect == Effect.CLOSE_TRANSPORT:
            if handle is not None:
                await handle.close()
        elif effect == Effect.CLEAR_SECRET:
            self.shared_secret = None
        elif effect == Effect.NOTIFY:
            self._notify_change()

    async def _send_syn(self, handle: Optional[TransportHandle]) -> None:
        try:
            frame = self.handshake.start()
            await handle.send(frame)
        except (HandshakeError, NetworkError) as e:
            logger.warning(f"Failed to send handshake to {self.peer_id}: {e}")
            await self.dispatch(SessionEvent.HANDSHAKE_FAILED)

    async def _process_handshake(self, handle: Optional[TransportHandle], frame: Dict[str, Any]) -> None:
        try:
            reply = self.handshake.handle_frame(frame)
            if reply is not None:
                await handle.send(reply)
        except IdentityMismatchError as e:
            logger.warning(f"Security alert for {self.peer_id}: {e.message}")
            self._security_alert(e)
            await self.dispatch(SessionEvent.HANDSHAKE_FAILED)
            return
        except HandshakeError as e:
            logger.warning(f"Handshake with {self.peer_id} failed: {e.message}")
            await self.dispatch(SessionEvent.HANDSHAKE_FAILED)
            return
        except NetworkError as e:
            logger.warning(f"Could not send handshake reply to {self.peer_id}: {e.message}")
            await self.dispatch(SessionEvent.HANDSHAKE_FAILED)
            return

        self._cancel_handshake_timer()
        self.shared_secret = self.handshake.shared_secret
        self.last_message = "Secure connection established"
        await self.dispatch(SessionEvent.HANDSHAKE_COMPLETE)

    def _receive_message(self, frame: Dict[str, Any]) -> None:
        payload = self.codec.decode(self, frame)
        if payload is None or self._closed or not self.is_secure:
            return
        message = Message.create(Sender.PEER, payload)
        self.append(message)
        if self.on_message:
            try:
                self.on_message(self, message)
            except Exception as e:
                logger.error(f"Message callback error: {e}")
        self._notify_change()

    # -- history ----------------------------------------------------------

    def append(self, message: Message) -> None:
        """Append a message and update recency, preview and unread count."""
        self.messages.append(message)
        self.last_activity = max(self.last_activity, message.timestamp)
        self.last_message = preview(message.payload)
        if message.sender == Sender.PEER and not self.active:
            self.unread += 1

    async def send(self, payload: MessagePayload) -> Message:
        """
        Encrypt and send a payload, then record it in history.

        Raises:
            HandshakeError: If the session is not secure
            PayloadTooLargeError: If an attachment exceeds the size ceiling
            TransportError: If the transport refuses the frame
        """
        frame = self.codec.encode(self, payload)
        await self.handle.send(frame)
        message = Message.create(Sender.SELF, payload)
        self.append(message)
        self._notify_change()
        return message

    def mark_read(self) -> None:
        self.unread = 0

    async def close(self) -> None:
        """Close the session and its handle. Repeated calls do nothing."""
        if self._closed:
            return
        self._closed = True
        self.shared_secret = None
        self._cancel_handshake_timer()
        self.machine.transition(SessionEvent.CLOSED)

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker

        handle, self.handle = self.handle, None
        if handle is not None:
            handle.set_listener(None)
            await handle.close()
        logger.debug(f"Session with {self.peer_id} closed")

    # -- notifications ----------------------------------------------------

    def _notify_change(self) -> None:
        if self.on_change:
            try:
                self.on_change(self)
            except Exception as e:
                logger.error(f"Change callback error: {e}")

    def _security_alert(self, error: HandshakeError) -> None:
        if self.on_security_alert:
            try:
                self.on_security_alert(self, error)
            except Exception as e:
                logger.error(f"Security alert callback error: {e}")

    # -- persistence ------------------------------------------------------

    def to_snapshot(self) -> Dict[str, Any]:
        """Persistable form. Always recorded as disconnected, never with a handle."""
        return {
            "id": self.peer_id,
            "messages": [m.to_dict() for m in self.messages],
            "status": "disconnected",
            "unread": self.unread,
            "lastMessage": self.last_message,
            "timestamp": self.last_activity,
        }

    @staticmethod
    def from_snapshot(peer_id: str, data: Dict[str, Any], identity: Identity,
                      codec: MessageCodec) -> "PeerSession":
        """Rebuild a disconnected session from a snapshot.

        Raises:
            ValueError: If the snapshot is malformed
        """
        session = PeerSession(peer_id, identity, codec, state=SessionState.DISCONNECTED)
        for item in data.get("messages", []):
            try:
                session.messages.append(Message.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable message for {peer_id}: {e}")
        session.unread = int(data.get("unread", 0))
        session.last_activity = int(data.get("timestamp", session.last_activity))
        last_message = data.get("lastMessage")
        if isinstance(last_message, str):
            session.last_message = last_message
        elif session.messages:
            session.last_message = preview(session.messages[-1].payload)
        else:
            session.last_message = "Disconnected"
        return session

    def __repr__(self) -> str:
        return f"PeerSession({self.peer_id}, {self.status}, {len(self.messages)} messages)"
