"""
hashhello - Transport interface and in-process implementation.

The real data channel (connection setup, NAT traversal, relays) lives
outside this package. Sessions only see the small interface below: a
``Transport`` that dials peers by numeric id and reports inbound
connections, and a ``TransportHandle`` per connection that sends frames
and reports ``open``, ``data``, ``close`` and ``error`` events.

``MemoryNetwork`` wires ``MemoryTransport`` instances together on the
running event loop. Frames are JSON round-tripped so nothing shared by
reference leaks between peers.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import PeerUnreachableError, TransportError

logger = logging.getLogger(__name__)

# Transport event names
EVENT_OPEN = "open"
EVENT_DATA = "data"
EVENT_CLOSE = "close"
EVENT_ERROR = "error"

TransportListener = Callable[[str, Any], None]


class TransportHandle(ABC):
    """
    One connection to one peer.

    A plain capability: it carries the peer address and nothing else. The
    listener receives ``(event, data)`` where data is the frame for
    ``data`` events and the exception for ``error`` events.
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self._listener: Optional[TransportListener] = None

    def set_listener(self, listener: Optional[TransportListener]) -> None:
        self._listener = listener

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether frames can currently be sent."""

    @abstractmethod
    async def send(self, frame: Dict[str, Any]) -> None:
        """
        Send one frame.

        Raises:
            TransportError: If the connection is not open
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""


class Transport(ABC):
    """Dials peers by numeric id and reports inbound connections."""

    def __init__(self, local_id: str):
        self.local_id = local_id
        self._connection_listener: Optional[Callable[[TransportHandle], None]] = None

    def on_connection(self, listener: Optional[Callable[[TransportHandle], None]]) -> None:
        self._connection_listener = listener

    @abstractmethod
    async def connect(self, peer_id: str) -> TransportHandle:
        """
        Open a connection to a peer.

        The handle is returned before the connection is open; an
        unreachable peer is reported through an ``error`` event carrying
        ``PeerUnreachableError``.
        """

    @abstractmethod
    async def close(self) -> None:
        """Stop accepting connections and close every open handle."""


class MemoryHandle(TransportHandle):
    """One end of an in-process connection."""

    def __init__(self, peer_id: str):
        super().__init__(peer_id)
        self.remote: Optional["MemoryHandle"] = None
        self._open = False
        self._closed = False
        self._pending: List[Tuple[str, Any]] = []

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    def set_listener(self, listener: Optional[TransportListener]) -> None:
        super().set_listener(listener)
        if listener is not None and self._pending:
            pending, self._pending = self._pending, []
            for event, data in pending:
                listener(event, data)

    def _emit(self, event: str, data: Any = None) -> None:
        asyncio.get_running_loop().call_soon(self._deliver, event, data)

    def _deliver(self, event: str, data: Any) -> None:
        if self._listener is None:
            self._pending.append((event, data))
            return
        self._listener(event, data)

    def _mark_open(self) -> None:
        if self._closed:
            return
        self._open = True
        self._emit(EVENT_OPEN)

    def _fail(self, error: Exception) -> None:
        if self._closed:
            return
        self._closed = True
        self._emit(EVENT_ERROR, error)

    async def send(self, frame: Dict[str, Any]) -> None:
        if not self.is_open or self.remote is None:
            raise TransportError(f"Connection to {self.peer_id} is not open", {"peer_id": self.peer_id})
        try:
            wire = json.dumps(frame)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Frame is not serializable: {e}") from e
        if self.remote.is_open:
            self.remote._emit(EVENT_DATA, json.loads(wire))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self._emit(EVENT_CLOSE)
        remote = self.remote
        if remote is not None and not remote._closed:
            remote._closed = True
            remote._open = False
            remote._emit(EVENT_CLOSE)


class MemoryNetwork:
    """Routes connections between ``MemoryTransport`` instances by numeric id."""

    def __init__(self):
        self.transports: Dict[str, "MemoryTransport"] = {}
        self.connect_attempts: Dict[str, int] = {}

    def transport(self, local_id: str) -> "MemoryTransport":
        """Create and register a transport reachable at ``local_id``."""
        transport = MemoryTransport(self, local_id)
        self.transports[local_id] = transport
        return transport

    def unregister(self, local_id: str) -> None:
        self.transports.pop(local_id, None)

    async def drop_connections(self, local_id: str) -> None:
        """Close every open connection touching ``local_id``."""
        transport = self.transports.get(local_id)
        if transport is None:
            return
        for handle in list(transport.handles):
            await handle.close()

    def _open_pair(self, source: "MemoryTransport", peer_id: str) -> MemoryHandle:
        self.connect_attempts[peer_id] = self.connect_attempts.get(peer_id, 0) + 1
        local = MemoryHandle(peer_id)
        source.handles.append(local)

        target = self.transports.get(peer_id)
        if target is None or not target.accepting:
            logger.debug(f"Peer {peer_id} is not registered")
            local._fail(PeerUnreachableError(peer_id))
            return local

        remote = MemoryHandle(source.local_id)
        local.remote = remote
        remote.remote = local
        target.handles.append(remote)
        target._deliver_inbound(remote)

        local._mark_open()
        remote._mark_open()
        return local


class MemoryTransport(Transport):
    """In-process transport for tests and local demos."""

    def __init__(self, network: MemoryNetwork, local_id: str):
        super().__init__(local_id)
        self.network = network
        self.handles: List[MemoryHandle] = []
        self.accepting = True

    async def connect(self, peer_id: str) -> TransportHandle:
        if not self.accepting:
            raise TransportError("Transport is closed", {"local_id": self.local_id})
        return self.network._open_pair(self, peer_id)

    def _deliver_inbound(self, handle: MemoryHandle) -> None:
        if self._connection_listener is None:
            logger.debug(f"No listener for inbound connection from {handle.peer_id}")
            return
        asyncio.get_running_loop().call_soon(self._connection_listener, handle)

    async def close(self) -> None:
        self.accepting = False
        for handle in list(self.handles):
            await handle.close()
        self.handles.clear()
        self.network.unregister(self.local_id)
