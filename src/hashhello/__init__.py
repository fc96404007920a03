"""
hashhello - End-to-end encrypted peer-to-peer messaging

Two parties exchange messages directly over a peer-to-peer data channel,
authenticating each other by a 9-digit number derived from their public
key. Everything stored locally is encrypted under a master password.

License: MIT
"""

__version__ = "0.3.0"
__license__ = "MIT"

from .client import HelloClient
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    CorruptDataError,
    CryptoError,
    DecryptionError,
    ErrorCode,
    HandshakeError,
    HelloError,
    IdentityError,
    IdentityMismatchError,
    InvalidCredentialError,
    InvalidKeyError,
    InvalidPeerIdError,
    NetworkError,
    PayloadTooLargeError,
    PeerUnreachableError,
    StorageError,
    TransportError,
    WrongPasswordError,
)
from .identity import Identity, IdentityManager
from .message import AudioPayload, ImagePayload, Message, TextPayload
from .registry import MultiSessionRegistry

__all__ = [
    "APP_NAME",
    "VERSION",
    "AudioPayload",
    "Config",
    "ConfigError",
    "CorruptDataError",
    "CryptoError",
    "DecryptionError",
    "ErrorCode",
    "HandshakeError",
    "HelloClient",
    "HelloError",
    "Identity",
    "IdentityError",
    "IdentityManager",
    "IdentityMismatchError",
    "ImagePayload",
    "InvalidCredentialError",
    "InvalidKeyError",
    "InvalidPeerIdError",
    "Message",
    "MultiSessionRegistry",
    "NetworkError",
    "PayloadTooLargeError",
    "PeerUnreachableError",
    "StorageError",
    "TextPayload",
    "TransportError",
    "WrongPasswordError",
    "__license__",
    "__version__",
]
