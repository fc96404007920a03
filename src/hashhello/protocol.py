"""
hashhello - Wire protocol definitions.

Every frame on the data channel is one JSON object with a ``type`` field:

- ``{"type": "handshake-syn", "publicKey": <JWK>}``
- ``{"type": "handshake-ack", "publicKey": <JWK>}``
- ``{"type": "msg", "payload": {"iv": <hex>, "ciphertext": <hex>}}``
"""

import json
from enum import Enum
from typing import Any, Dict

from .errors import ErrorCode, NetworkError


class FrameType(str, Enum):
    """Frame type definitions."""

    HANDSHAKE_SYN = "handshake-syn"
    HANDSHAKE_ACK = "handshake-ack"
    MESSAGE = "msg"


HANDSHAKE_FRAMES = (FrameType.HANDSHAKE_SYN, FrameType.HANDSHAKE_ACK)


class Protocol:
    """Frame construction, validation and (de)serialization."""

    @staticmethod
    def pack_frame(frame: Dict[str, Any]) -> str:
        """
        Serialize a frame to its JSON text form.

        Raises:
            NetworkError: If frame validation fails
        """
        Protocol.validate_frame(frame)
        return json.dumps(frame, separators=(",", ":"))

    @staticmethod
    def unpack_frame(data: Any) -> Dict[str, Any]:
        """
        Parse a received frame.

        Accepts JSON text, UTF-8 bytes, or an already-decoded object.

        Raises:
            NetworkError: If the frame is not valid JSON or fails validation
        """
        if isinstance(data, (bytes, bytearray)):
            try:
                data = data.decode("utf-8")
            except UnicodeDecodeError as e:
                raise NetworkError(
                    ErrorCode.E206_INVALID_MESSAGE, f"Frame is not UTF-8: {e}"
                ) from e

        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise NetworkError(
                    ErrorCode.E206_INVALID_MESSAGE, f"Invalid JSON frame: {e}"
                ) from e

        Protocol.validate_frame(data)
        return data

    @staticmethod
    def frame_type(frame: Dict[str, Any]) -> FrameType:
        return FrameType(frame["type"])

    @staticmethod
    def validate_frame(frame: Any) -> None:
        """
        Validate frame structure for its type.

        Raises:
            NetworkError: If the frame is invalid
        """
        if not isinstance(frame, dict):
            raise NetworkError(ErrorCode.E206_INVALID_MESSAGE, "Frame must be an object")

        try:
            frame_type = FrameType(frame.get("type"))
        except ValueError:
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unknown frame type: {frame.get('type')}",
                {"type": frame.get("type")},
            )

        if frame_type in HANDSHAKE_FRAMES:
            if not isinstance(frame.get("publicKey"), (dict, str)):
                raise NetworkError(
                    ErrorCode.E206_INVALID_MESSAGE,
                    "Handshake frame missing publicKey",
                    {"type": frame_type.value},
                )
        elif frame_type == FrameType.MESSAGE:
            payload = frame.get("payload")
            if not isinstance(payload, dict):
                raise NetworkError(ErrorCode.E206_INVALID_MESSAGE, "Message frame missing payload")
            for field_name in ("iv", "ciphertext"):
                if not isinstance(payload.get(field_name), str):
                    raise NetworkError(
                        ErrorCode.E206_INVALID_MESSAGE,
                        f"Message payload missing field: {field_name}",
                        {"field": field_name},
                    )

    @staticmethod
    def create_syn(public_jwk: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": FrameType.HANDSHAKE_SYN.value, "publicKey": public_jwk}

    @staticmethod
    def create_ack(public_jwk: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": FrameType.HANDSHAKE_ACK.value, "publicKey": public_jwk}

    @staticmethod
    def create_message(encrypted: Dict[str, str]) -> Dict[str, Any]:
        """Wrap an AES-GCM ``{iv, ciphertext}`` pair as a message frame."""
        return {
            "type": FrameType.MESSAGE.value,
            "payload": {"iv": encrypted["iv"], "ciphertext": encrypted["ciphertext"]},
        }
