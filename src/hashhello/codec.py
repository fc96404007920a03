"""
hashhello - Message codec.

Turns payloads into encrypted ``msg`` frames for a secure session and
back again. Oversized attachments are refused before any encryption
happens, and frames that fail authentication are dropped.
"""

import logging
from typing import Any, Dict, Optional

from . import crypto
from .connection_fsm import SessionState
from .constants import MAX_ATTACHMENT_SIZE
from .errors import DecryptionError, HandshakeError, PayloadTooLargeError
from .message import BINARY_PAYLOADS, MessagePayload, attachment_size, decode_payload, encode_payload
from .protocol import Protocol

logger = logging.getLogger(__name__)


class MessageCodec:
    """Encrypts and decrypts application payloads under a session secret."""

    def __init__(self, max_attachment_size: int = MAX_ATTACHMENT_SIZE):
        self.max_attachment_size = max_attachment_size

    def check_size(self, payload: MessagePayload) -> None:
        """
        Raises:
            PayloadTooLargeError: If an image or audio payload is over the ceiling
        """
        if isinstance(payload, BINARY_PAYLOADS):
            size = attachment_size(payload.content)
            if size > self.max_attachment_size:
                raise PayloadTooLargeError(size, self.max_attachment_size)

    def encode(self, session, payload: MessagePayload) -> Dict[str, Any]:
        """
        Encrypt a payload into a ``msg`` frame.

        Args:
            session: Session whose shared secret encrypts the frame
            payload: Payload to send

        Returns:
            Message frame ready for the transport

        Raises:
            HandshakeError: If the session is not secure
            PayloadTooLargeError: If an attachment exceeds the size ceiling
        """
        if session.state != SessionState.SECURE or session.shared_secret is None:
            raise HandshakeError(
                f"Session with {session.peer_id} is not secure",
                {"peer_id": session.peer_id, "state": session.state.name},
            )

        self.check_size(payload)
        encrypted = crypto.encrypt_message(encode_payload(payload), session.shared_secret)
        return Protocol.create_message(encrypted)

    def decode(self, session, frame: Dict[str, Any]) -> Optional[MessagePayload]:
        """
        Decrypt a ``msg`` frame.

        Returns:
            The payload, or None when the session has no secret or the frame
            fails authentication
        """
        secret = session.shared_secret
        if secret is None:
            logger.debug(f"Dropping message from {session.peer_id}: no shared secret")
            return None

        try:
            plaintext = crypto.decrypt_message(frame["payload"], secret)
        except DecryptionError as e:
            logger.warning(f"Dropping message from {session.peer_id}: {e.message}")
            return None

        return decode_payload(plaintext)
