"""
hashhello - Two-message handshake.

The initiator sends its public key in a ``handshake-syn`` frame. The
responder imports it, checks that it hashes to the numeric id the
transport says the connection belongs to, derives the shared secret and
answers with its own key in a ``handshake-ack`` frame. The initiator then
runs the same check on the ack.

A shared secret is only exposed once the remote key has been verified
against the transport-level peer address. Any failure is terminal for the
connection and leaves no secret behind.
"""

import logging
from enum import Enum, auto
from typing import Any, Dict, Optional

from . import crypto
from .errors import CryptoError, HandshakeError, IdentityMismatchError, InvalidKeyError
from .identity import Identity, IdentityManager
from .protocol import FrameType, Protocol

logger = logging.getLogger(__name__)


class HandshakeState(Enum):
    NONE = auto()
    SYN_SENT = auto()  # initiator, waiting for ack
    SYN_RECEIVED = auto()  # responder, verifying syn
    SECURE = auto()
    FAILED = auto()  # terminal


class Handshake:
    """
    Handshake state for a single transport connection.

    Attributes:
        identity: Local identity whose key is offered to the peer
        peer_id: Numeric id the transport associates with the connection
        state: Current handshake state
    """

    def __init__(self, identity: Identity, peer_id: str):
        self.identity = identity
        self.peer_id = peer_id
        self.state = HandshakeState.NONE
        self._shared_secret: Optional[bytes] = None

    @property
    def shared_secret(self) -> Optional[bytes]:
        """The derived key, or None until the handshake is secure."""
        if self.state != HandshakeState.SECURE:
            return None
        return self._shared_secret

    @property
    def is_secure(self) -> bool:
        return self.state == HandshakeState.SECURE

    def start(self) -> Dict[str, Any]:
        """
        Begin the handshake as initiator.

        Returns:
            The syn frame to send

        Raises:
            HandshakeError: If the handshake has already started
        """
        if self.state != HandshakeState.NONE:
            raise self._fail(HandshakeError(
                f"Cannot start handshake in state {self.state.name}",
                {"peer_id": self.peer_id},
            ))
        self.state = HandshakeState.SYN_SENT
        logger.debug(f"Sending handshake syn to {self.peer_id}")
        return Protocol.create_syn(self.identity.public_jwk)

    def handle_frame(self, frame: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Process a handshake frame from the peer.

        Args:
            frame: A validated ``handshake-syn`` or ``handshake-ack`` frame

        Returns:
            The ack frame to send back when responding to a syn, else None

        Raises:
            IdentityMismatchError: If the peer key does not hash to peer_id
            HandshakeError: On a bad key or a frame unexpected in this state
        """
        frame_type = Protocol.frame_type(frame)

        if frame_type == FrameType.HANDSHAKE_SYN and self.state == HandshakeState.NONE:
            self.state = HandshakeState.SYN_RECEIVED
            self._verify_and_derive(frame.get("publicKey"))
            self.state = HandshakeState.SECURE
            logger.info(f"Handshake with {self.peer_id} complete (responder)")
            return Protocol.create_ack(self.identity.public_jwk)

        if frame_type == FrameType.HANDSHAKE_ACK and self.state == HandshakeState.SYN_SENT:
            self._verify_and_derive(frame.get("publicKey"))
            self.state = HandshakeState.SECURE
            logger.info(f"Handshake with {self.peer_id} complete (initiator)")
            return None

        raise self._fail(HandshakeError(
            f"Unexpected {frame_type.value} in state {self.state.name}",
            {"peer_id": self.peer_id, "state": self.state.name},
        ))

    def _verify_and_derive(self, serialized_key: Any) -> None:
        try:
            remote_public = IdentityManager.import_peer_public_key(serialized_key)
        except InvalidKeyError as e:
            raise self._fail(HandshakeError(
                f"Peer {self.peer_id} sent an invalid public key: {e.message}",
                {"peer_id": self.peer_id},
            )) from e

        derived_id = crypto.derive_numeric_id(remote_public)
        if derived_id != self.peer_id:
            logger.warning(
                f"Identity verification failed for {self.peer_id} (key hashes to {derived_id})"
            )
            raise self._fail(IdentityMismatchError(self.peer_id, derived_id))

        try:
            self._shared_secret = crypto.derive_shared_secret(
                self.identity.private_key, remote_public
            )
        except CryptoError as e:
            raise self._fail(HandshakeError(
                f"Key agreement with {self.peer_id} failed: {e.message}",
                {"peer_id": self.peer_id},
            )) from e

    def _fail(self, error: HandshakeError) -> HandshakeError:
        self.state = HandshakeState.FAILED
        self._shared_secret = None
        return error
