"""
hashhello - Identity management.

Generates and recovers identities. An identity is an ECDH key pair plus
the 9-digit numeric id derived from its public key. The portable login
credential is base64 of ``{phoneNumber, privateKey, publicKey}`` with
both keys as JWK.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives.asymmetric import ec

from . import crypto
from .errors import InvalidCredentialError, InvalidKeyError

logger = logging.getLogger(__name__)


class Identity:
    """Represents the local user's identity: key pair and numeric id."""

    def __init__(self, keypair: crypto.IdentityKeyPair):
        self.keypair = keypair
        self.numeric_id = crypto.derive_numeric_id(keypair.public_key)
        self.formatted_number = crypto.format_numeric_id(self.numeric_id)
        self.public_jwk = keypair.public_jwk()

    @property
    def private_key(self) -> ec.EllipticCurvePrivateKey:
        return self.keypair.private_key

    def to_dict(self) -> Dict[str, Any]:
        """Export identity to the credential object shape."""
        return {
            "phoneNumber": self.numeric_id,
            "privateKey": self.keypair.private_jwk(),
            "publicKey": self.public_jwk,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Identity":
        """Import identity from the credential object shape.

        Raises:
            InvalidCredentialError: If keys are missing, malformed, or do not
                match the stored phone number
        """
        if not isinstance(data, dict):
            raise InvalidCredentialError("Credential must decode to an object")

        try:
            keypair = crypto.IdentityKeyPair.from_private_jwk(data["privateKey"])
            declared_public = crypto.public_key_from_jwk(data["publicKey"])
        except KeyError as e:
            raise InvalidCredentialError(f"Missing credential field: {e}") from e
        except InvalidKeyError as e:
            raise InvalidCredentialError(f"Invalid key material: {e.message}") from e

        if crypto.public_key_bytes(declared_public) != keypair.get_public_key_bytes():
            raise InvalidCredentialError("Public key does not match private key")

        identity = Identity(keypair)
        stored_number = data.get("phoneNumber")
        if stored_number is not None and str(stored_number) != identity.numeric_id:
            raise InvalidCredentialError(
                "Phone number does not match key",
                {"stored": str(stored_number), "derived": identity.numeric_id},
            )
        return identity

    def login_credential(self) -> str:
        """Encode the portable login credential."""
        payload = json.dumps(self.to_dict(), separators=(",", ":"))
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    def get_shareable_info(self) -> Dict[str, Any]:
        """Public information safe to hand to other parties."""
        return {
            "phoneNumber": self.numeric_id,
            "formattedNumber": self.formatted_number,
            "publicKey": self.public_jwk,
        }

    def __repr__(self) -> str:
        return f"Identity({self.formatted_number})"


class IdentityManager:
    """Creates identities and imports login credentials and peer keys."""

    def __init__(self):
        self.identity: Optional[Identity] = None

    def generate(self) -> Identity:
        """Generate a fresh key pair and derive its numeric id."""
        identity = Identity(crypto.IdentityKeyPair())
        self.identity = identity
        logger.info(f"Generated identity {identity.formatted_number}")
        return identity

    def import_credential(self, credential: str) -> Identity:
        """
        Reconstruct an identity from a login credential.

        Raises:
            InvalidCredentialError: On base64, JSON, or key import failure
        """
        if not isinstance(credential, str) or not credential.strip():
            raise InvalidCredentialError("Login key is empty")

        try:
            raw = base64.b64decode(credential.strip(), validate=True)
            data = json.loads(raw.decode("utf-8"))
        except (binascii.Error, ValueError) as e:
            logger.warning("Failed to decode login key")
            raise InvalidCredentialError(f"Login key could not be decoded: {e}") from e

        identity = Identity.from_dict(data)
        self.identity = identity
        logger.info(f"Imported identity {identity.formatted_number}")
        return identity

    @staticmethod
    def import_peer_public_key(serialized: Union[Dict[str, Any], str]) -> ec.EllipticCurvePublicKey:
        """
        Reconstruct a peer's public key for verification and key agreement.

        Raises:
            InvalidKeyError: On malformed input
        """
        return crypto.public_key_from_jwk(serialized)
