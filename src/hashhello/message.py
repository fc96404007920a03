"""
hashhello - Message payloads and chat history entries.

A message payload is a closed sum type: text, image or audio. The wire
form is a JSON object tagged by ``type``. Anything that does not parse
into a recognised tag decodes to a text payload carrying the whole
decrypted string, for interoperability with peers that send plain text.
"""

import base64
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .constants import LAST_MESSAGE_PREVIEW_LENGTH

logger = logging.getLogger(__name__)


class Sender(str, Enum):
    """Who authored a message, as stored in history."""

    SELF = "me"
    PEER = "them"


@dataclass(frozen=True)
class TextPayload:
    content: str

    kind = "text"


@dataclass(frozen=True)
class ImagePayload:
    """An image as a data URL, with an optional original file name."""

    content: str
    file_name: Optional[str] = None

    kind = "image"


@dataclass(frozen=True)
class AudioPayload:
    """A voice message as a data URL."""

    content: str

    kind = "audio"


MessagePayload = Union[TextPayload, ImagePayload, AudioPayload]

BINARY_PAYLOADS = (ImagePayload, AudioPayload)


def payload_to_dict(payload: MessagePayload) -> Dict[str, Any]:
    """Serialize a payload to its tagged dictionary form."""
    data: Dict[str, Any] = {"type": payload.kind, "content": payload.content}
    if isinstance(payload, ImagePayload) and payload.file_name:
        data["fileName"] = payload.file_name
    return data


def payload_from_dict(data: Any) -> Optional[MessagePayload]:
    """
    Build a payload from its tagged dictionary form.

    Returns None when the value carries no recognised type tag or the
    content is not a string.
    """
    if not isinstance(data, dict):
        return None

    content = data.get("content")
    if not isinstance(content, str):
        return None

    kind = data.get("type")
    if kind == "text":
        return TextPayload(content)
    if kind == "image":
        file_name = data.get("fileName")
        return ImagePayload(content, file_name if isinstance(file_name, str) else None)
    if kind == "audio":
        return AudioPayload(content)
    return None


def encode_payload(payload: MessagePayload) -> str:
    """Canonical text form of a payload: compact JSON with sorted keys."""
    return json.dumps(payload_to_dict(payload), separators=(",", ":"), sort_keys=True)


def decode_payload(text: str) -> MessagePayload:
    """
    Decode a decrypted payload string.

    Untagged or non-JSON input falls back to a text payload containing the
    entire string.
    """
    try:
        parsed = json.loads(text)
    except ValueError:
        return TextPayload(text)

    payload = payload_from_dict(parsed)
    if payload is None:
        logger.debug("Untagged payload received, treating as text")
        return TextPayload(text)
    return payload


def preview(payload: MessagePayload) -> str:
    """Short text for a chat list entry."""
    if isinstance(payload, ImagePayload):
        return "\U0001F4F7 Image"
    if isinstance(payload, AudioPayload):
        return "\U0001F3A4 Voice message"
    text = payload.content.strip().replace("\n", " ")
    if len(text) > LAST_MESSAGE_PREVIEW_LENGTH:
        text = text[: LAST_MESSAGE_PREVIEW_LENGTH - 1] + "…"
    return text


def attachment_size(content: str) -> int:
    """
    Size in bytes of the file carried by an attachment.

    For a base64 data URL this is the decoded length of its body; any other
    content is measured as UTF-8 text.
    """
    if content.startswith("data:") and ";base64," in content:
        body = content.split(";base64,", 1)[1].strip()
        padding = len(body) - len(body.rstrip("="))
        return len(body) * 3 // 4 - padding
    return len(content.encode("utf-8"))


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64," + base64.b64encode(data).decode("ascii")


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """One entry in a session's history. Never mutated after creation."""

    sender: Sender
    payload: MessagePayload
    timestamp: int

    @staticmethod
    def create(sender: Sender, payload: MessagePayload) -> "Message":
        return Message(sender, payload, now_ms())

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary for storage."""
        return {
            "sender": self.sender.value,
            "content": payload_to_dict(self.payload),
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        """Create message from dictionary.

        Stored content without a recognised tag is restored as text.

        Raises:
            ValueError: If the sender or timestamp is invalid
        """
        sender = Sender(data["sender"])
        content = data.get("content")
        payload = payload_from_dict(content)
        if payload is None:
            if isinstance(content, str):
                payload = TextPayload(content)
            else:
                payload = TextPayload(json.dumps(content))
        return Message(sender, payload, int(data["timestamp"]))
