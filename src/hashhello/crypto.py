"""
hashhello - Cryptographic primitives.

This module implements the primitives the protocol is built on:
- ECDH P-256 identity key pairs, exported and imported as JWK
- Numeric identifier derivation from the raw public key
- ECDH shared secret derivation (used directly as an AES-256-GCM key)
- AES-256-GCM message encryption with a fresh 96-bit nonce per call

The JWK and raw-key encodings match WebCrypto so identities and frames
interoperate with browser peers.

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- PyJWT (MIT License) for JWK serialization
"""

import hashlib
import json
import os
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from jwt.algorithms import ECAlgorithm
from jwt.exceptions import InvalidKeyError as JWKError

from .constants import CURVE_NAME, NONCE_SIZE, NUMERIC_ID_LENGTH, NUMERIC_ID_MODULUS
from .errors import CryptoError, DecryptionError, ErrorCode, InvalidKeyError

PublicKeyLike = Union[ec.EllipticCurvePublicKey, bytes]


class IdentityKeyPair:
    """
    Represents a user's identity key pair for P2P communication.
    Uses ECDH over NIST P-256 for key agreement.

    The public half doubles as the user's address: its SHA-256 hash is
    folded into the 9-digit numeric identifier peers dial.
    """

    def __init__(self, private_key: Optional[ec.EllipticCurvePrivateKey] = None):
        if private_key is None:
            self.private_key = ec.generate_private_key(ec.SECP256R1())
        else:
            self.private_key = private_key
        self.public_key = self.private_key.public_key()

    def get_public_key_bytes(self) -> bytes:
        """Get public key as raw uncompressed point bytes (65 bytes)."""
        return public_key_bytes(self.public_key)

    def private_jwk(self) -> Dict[str, Any]:
        """Export the private key (with public coordinates) as a JWK dict."""
        jwk = json.loads(ECAlgorithm.to_jwk(self.private_key))
        jwk["ext"] = True
        jwk["key_ops"] = ["deriveKey", "deriveBits"]
        return jwk

    def public_jwk(self) -> Dict[str, Any]:
        """Export the public key as a JWK dict."""
        return public_key_to_jwk(self.public_key)

    @staticmethod
    def from_private_jwk(jwk: Dict[str, Any]) -> "IdentityKeyPair":
        """Import a key pair from a private JWK.

        Raises:
            InvalidKeyError: If the JWK is malformed or not a P-256 private key
        """
        key = _load_jwk(jwk)
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise InvalidKeyError("JWK does not contain private key material")
        return IdentityKeyPair(key)


def public_key_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Encode a public key as the raw uncompressed X9.62 point."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey) -> Dict[str, Any]:
    """Export a public key as a JWK dict."""
    jwk = json.loads(ECAlgorithm.to_jwk(public_key))
    jwk["ext"] = True
    jwk["key_ops"] = []
    return jwk


def public_key_from_jwk(jwk: Union[Dict[str, Any], str]) -> ec.EllipticCurvePublicKey:
    """
    Import a peer's public key from a JWK dict (or its JSON text).

    Only the public coordinates are kept, even if the JWK carries a
    private component.

    Raises:
        InvalidKeyError: If the JWK is malformed or not a P-256 key
    """
    if isinstance(jwk, str):
        try:
            jwk = json.loads(jwk)
        except ValueError as e:
            raise InvalidKeyError(f"Public key is not valid JSON: {e}") from e

    key = _load_jwk(jwk)
    if isinstance(key, ec.EllipticCurvePrivateKey):
        key = key.public_key()
    return key


def _load_jwk(jwk: Any):
    if not isinstance(jwk, dict):
        raise InvalidKeyError("JWK must be an object", {"type": type(jwk).__name__})

    if jwk.get("crv") != CURVE_NAME:
        raise InvalidKeyError(
            f"Unsupported curve: {jwk.get('crv')}", {"expected": CURVE_NAME}
        )

    try:
        return ECAlgorithm.from_jwk(json.dumps(jwk))
    except (JWKError, ValueError, KeyError, TypeError) as e:
        raise InvalidKeyError(f"Failed to import key: {e}") from e


def derive_numeric_id(public_key: PublicKeyLike) -> str:
    """
    Derive the 9-digit numeric identifier for a public key.

    The first 32 bits (big-endian) of SHA-256 over the raw public key are
    reduced modulo 10^9 and zero-padded. The mapping is deterministic, but
    distinct keys can collide since 2^32 values fold into 10^9 numbers.
    """
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        raw = public_key_bytes(public_key)
    else:
        raw = bytes(public_key)

    digest = hashlib.sha256(raw).digest()
    number = int.from_bytes(digest[:4], "big") % NUMERIC_ID_MODULUS
    return str(number).zfill(NUMERIC_ID_LENGTH)


def format_numeric_id(numeric_id: str) -> str:
    """Format a numeric id as ``#DDD DDD DDD``."""
    padded = str(numeric_id).zfill(NUMERIC_ID_LENGTH)
    return f"#{padded[0:3]} {padded[3:6]} {padded[6:]}"


def verify_identity(numeric_id: str, public_key: ec.EllipticCurvePublicKey) -> bool:
    """Check that a public key hashes to the claimed numeric id."""
    return derive_numeric_id(public_key) == numeric_id


def derive_shared_secret(local_private: ec.EllipticCurvePrivateKey,
                         remote_public: ec.EllipticCurvePublicKey) -> bytes:
    """
    Perform ECDH and return the 32-byte shared secret.

    The secret is used directly as the AES-256-GCM key, the same key
    WebCrypto yields for ``deriveKey({name: "ECDH"}, ..., {name: "AES-GCM",
    length: 256})``.
    """
    try:
        return local_private.exchange(ec.ECDH(), remote_public)
    except ValueError as e:
        raise CryptoError(
            ErrorCode.E108_KEY_DERIVATION_FAILED, f"Key agreement failed: {e}"
        ) from e


def encrypt_message(plaintext: str, shared_secret: bytes) -> Dict[str, str]:
    """
    Encrypt a message with AES-256-GCM.

    Returns a dict with hex-encoded ``iv`` and ``ciphertext`` (tag appended).
    """
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(shared_secret).encrypt(nonce, plaintext.encode("utf-8"), None)
    return {"iv": nonce.hex(), "ciphertext": ciphertext.hex()}


def decrypt_message(encrypted_data: Dict[str, str], shared_secret: bytes) -> str:
    """
    Decrypt a message produced by :func:`encrypt_message`.

    Raises:
        DecryptionError: If the frame is malformed or fails authentication
    """
    try:
        nonce, ciphertext = _decode_encrypted(encrypted_data)
        plaintext = AESGCM(shared_secret).decrypt(nonce, ciphertext, None)
        return plaintext.decode("utf-8")
    except InvalidTag as e:
        raise DecryptionError() from e
    except (ValueError, TypeError, KeyError, UnicodeDecodeError) as e:
        raise DecryptionError(f"Malformed encrypted payload: {e}") from e


def _decode_encrypted(encrypted_data: Dict[str, str]) -> Tuple[bytes, bytes]:
    nonce = bytes.fromhex(encrypted_data["iv"])
    ciphertext = bytes.fromhex(encrypted_data["ciphertext"])
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
    return nonce, ciphertext
