"""
hashhello - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
hashhello. Each error has a unique code for logging and debugging.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all hashhello error codes."""

    # General Errors (E001-E099)
    E002_INVALID_ARGUMENT = "E002"
    E003_FILE_NOT_FOUND = "E003"
    E004_FILE_WRITE_ERROR = "E004"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E108_KEY_DERIVATION_FAILED = "E108"

    # Network Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"
    E209_HANDSHAKE_FAILED = "E209"
    E210_PEER_UNREACHABLE = "E210"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E305_INVALID_IDENTITY = "E305"
    E306_INVALID_CREDENTIAL = "E306"
    E307_IDENTITY_MISMATCH = "E307"
    E308_INVALID_PEER_ID = "E308"

    # Storage Errors (E400-E499)
    E400_STORAGE_ERROR = "E400"
    E401_WRONG_PASSWORD = "E401"
    E402_CORRUPT_DATA = "E402"
    E403_STORAGE_LOCKED = "E403"
    E404_NO_IDENTITY = "E404"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class HelloError(Exception):
    """Base exception class for all hashhello errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(HelloError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class InvalidKeyError(CryptoError):
    """A serialized public key could not be imported."""

    def __init__(
        self,
        message: str = "Invalid public key",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E103_INVALID_KEY, message, details)


class DecryptionError(CryptoError):
    """AEAD authentication failed on a message frame."""

    def __init__(
        self,
        message: str = "Message authentication failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E102_DECRYPTION_FAILED, message, details)


class IdentityError(HelloError):
    """Exception raised for identity management failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_IDENTITY_ERROR,
        message: str = "Identity operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class InvalidCredentialError(IdentityError):
    """A login credential or backup identity could not be decoded or imported."""

    def __init__(
        self,
        message: str = "Invalid login key",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E306_INVALID_CREDENTIAL, message, details)


class InvalidPeerIdError(IdentityError, ValueError):
    """A dialed number is not a valid 9-digit identifier or is our own."""

    def __init__(
        self,
        message: str = "Invalid number",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E308_INVALID_PEER_ID, message, details)


class NetworkError(HelloError):
    """Exception raised for transport and protocol failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_NETWORK_ERROR,
        message: str = "Network operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class HandshakeError(NetworkError):
    """The handshake could not complete (bad frame, bad key, wrong state)."""

    def __init__(
        self,
        message: str = "Handshake failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E209_HANDSHAKE_FAILED,
    ):
        super().__init__(code, message, details)


class IdentityMismatchError(HandshakeError):
    """The peer's public key does not hash to the transport-level peer id."""

    def __init__(self, peer_id: str, derived_id: Optional[str] = None):
        self.peer_id = peer_id
        self.derived_id = derived_id
        super().__init__(
            f"Identity verification failed for {peer_id}",
            {"peer_id": peer_id, "derived_id": derived_id},
            code=ErrorCode.E307_IDENTITY_MISMATCH,
        )


class PayloadTooLargeError(NetworkError):
    """An attachment exceeds the size ceiling; raised before encryption."""

    def __init__(self, size: int, max_size: int):
        self.size = size
        self.max_size = max_size
        super().__init__(
            ErrorCode.E207_MESSAGE_TOO_LARGE,
            f"File too large: {size} bytes (max {max_size})",
            {"size": size, "max_size": max_size},
        )


class PeerUnreachableError(NetworkError):
    """The transport reports the peer address as unreachable."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        super().__init__(
            ErrorCode.E210_PEER_UNREACHABLE,
            f"Peer {peer_id} is unreachable",
            {"peer_id": peer_id},
        )


class TransportError(NetworkError):
    """Opaque failure surfaced from the external transport."""

    def __init__(
        self,
        message: str = "Transport failure",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E201_CONNECTION_FAILED, message, details)


class StorageError(HelloError):
    """Exception raised for persistence failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_STORAGE_ERROR,
        message: str = "Storage operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class WrongPasswordError(StorageError):
    """The master password does not decrypt the identity blob."""

    def __init__(self, message: str = "Incorrect password"):
        super().__init__(ErrorCode.E401_WRONG_PASSWORD, message)


class CorruptDataError(StorageError):
    """A stored blob is malformed or fails authentication under a verified key."""

    def __init__(
        self,
        message: str = "Stored data is corrupted",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E402_CORRUPT_DATA, message, details)


class ConfigError(HelloError):
    """Exception raised for configuration failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
