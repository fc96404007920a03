"""
hashhello - Cryptography tests.

Tests for key pairs, JWK serialization, numeric id derivation, key
agreement and message encryption.
"""

import hashlib
import json

import pytest

from hashhello import crypto
from hashhello.errors import DecryptionError, InvalidKeyError


def test_keypair_generation():
    """Test P-256 keypair generation."""
    keypair = crypto.IdentityKeyPair()

    raw = keypair.get_public_key_bytes()
    assert len(raw) == 65
    assert raw[0] == 0x04


def test_private_jwk_round_trip():
    original = crypto.IdentityKeyPair()

    jwk = original.private_jwk()
    assert jwk["kty"] == "EC"
    assert jwk["crv"] == "P-256"
    assert "d" in jwk

    restored = crypto.IdentityKeyPair.from_private_jwk(jwk)
    assert restored.get_public_key_bytes() == original.get_public_key_bytes()


def test_public_jwk_has_no_private_component():
    keypair = crypto.IdentityKeyPair()
    jwk = keypair.public_jwk()

    assert "d" not in jwk
    key = crypto.public_key_from_jwk(jwk)
    assert crypto.public_key_bytes(key) == keypair.get_public_key_bytes()


def test_public_key_from_private_jwk_keeps_public_half():
    keypair = crypto.IdentityKeyPair()
    key = crypto.public_key_from_jwk(keypair.private_jwk())
    assert crypto.public_key_bytes(key) == keypair.get_public_key_bytes()


def test_public_key_from_json_text():
    keypair = crypto.IdentityKeyPair()
    key = crypto.public_key_from_jwk(json.dumps(keypair.public_jwk()))
    assert crypto.public_key_bytes(key) == keypair.get_public_key_bytes()


@pytest.mark.parametrize("bad", [
    "not json",
    42,
    {"kty": "EC", "crv": "P-384", "x": "AA", "y": "AA"},
    {"kty": "EC", "crv": "P-256", "x": "garbage", "y": "garbage"},
])
def test_public_key_import_rejects_bad_input(bad):
    with pytest.raises(InvalidKeyError):
        crypto.public_key_from_jwk(bad)


def test_from_private_jwk_requires_private_key():
    keypair = crypto.IdentityKeyPair()
    with pytest.raises(InvalidKeyError):
        crypto.IdentityKeyPair.from_private_jwk(keypair.public_jwk())


def test_numeric_id_derivation():
    """Numeric id is the first 32 bits of SHA-256 over the raw key, mod 10^9."""
    keypair = crypto.IdentityKeyPair()
    raw = keypair.get_public_key_bytes()

    expected = int.from_bytes(hashlib.sha256(raw).digest()[:4], "big") % 10 ** 9
    numeric_id = crypto.derive_numeric_id(keypair.public_key)

    assert numeric_id == str(expected).zfill(9)
    assert len(numeric_id) == 9
    assert numeric_id.isdigit()


def test_numeric_id_is_deterministic():
    keypair = crypto.IdentityKeyPair()
    from_key = crypto.derive_numeric_id(keypair.public_key)
    from_bytes = crypto.derive_numeric_id(keypair.get_public_key_bytes())
    restored = crypto.IdentityKeyPair.from_private_jwk(keypair.private_jwk())

    assert from_key == from_bytes == crypto.derive_numeric_id(restored.public_key)


def test_format_numeric_id():
    assert crypto.format_numeric_id("123456789") == "#123 456 789"
    assert crypto.format_numeric_id("000001234") == "#000 001 234"
    assert crypto.format_numeric_id("1234") == "#000 001 234"


def test_verify_identity():
    keypair = crypto.IdentityKeyPair()
    other = crypto.IdentityKeyPair()
    numeric_id = crypto.derive_numeric_id(keypair.public_key)

    assert crypto.verify_identity(numeric_id, keypair.public_key)
    if crypto.derive_numeric_id(other.public_key) != numeric_id:
        assert not crypto.verify_identity(numeric_id, other.public_key)


def test_key_exchange():
    """Test ECDH produces matching 32-byte secrets on both sides."""
    alice = crypto.IdentityKeyPair()
    bob = crypto.IdentityKeyPair()

    alice_secret = crypto.derive_shared_secret(alice.private_key, bob.public_key)
    bob_secret = crypto.derive_shared_secret(bob.private_key, alice.public_key)

    assert alice_secret == bob_secret
    assert len(alice_secret) == 32


def test_message_encryption():
    """Test AES-GCM encryption and decryption."""
    alice = crypto.IdentityKeyPair()
    bob = crypto.IdentityKeyPair()
    secret = crypto.derive_shared_secret(alice.private_key, bob.public_key)

    plaintext = "Secret message with unicode: 你好世界 🔒"
    encrypted = crypto.encrypt_message(plaintext, secret)

    assert len(bytes.fromhex(encrypted["iv"])) == 12
    assert plaintext not in encrypted["ciphertext"]
    assert crypto.decrypt_message(encrypted, secret) == plaintext


def test_encryption_uses_fresh_nonce():
    secret = bytes(32)
    first = crypto.encrypt_message("same", secret)
    second = crypto.encrypt_message("same", secret)

    assert first["iv"] != second["iv"]
    assert first["ciphertext"] != second["ciphertext"]


def _flip_bit(hex_value, bit):
    data = bytearray(bytes.fromhex(hex_value))
    bit %= len(data) * 8
    data[bit // 8] ^= 1 << (bit % 8)
    return data.hex()


# "hello" encrypts to 5 body bytes followed by a 16-byte tag
@pytest.mark.parametrize("field,bit", [
    ("iv", 0),
    ("iv", 95),
    ("ciphertext", 0),
    ("ciphertext", 37),
    ("ciphertext", 40),
    ("ciphertext", 130),
    ("ciphertext", -1),
])
def test_tampered_ciphertext_is_rejected(field, bit):
    secret = bytes(range(32))
    encrypted = crypto.encrypt_message("hello", secret)

    tampered = dict(encrypted)
    tampered[field] = _flip_bit(encrypted[field], bit)

    with pytest.raises(DecryptionError):
        crypto.decrypt_message(tampered, secret)


def test_wrong_key_is_rejected():
    encrypted = crypto.encrypt_message("hello", bytes(32))
    with pytest.raises(DecryptionError):
        crypto.decrypt_message(encrypted, bytes([1] * 32))


@pytest.mark.parametrize("payload", [
    {},
    {"iv": "zz", "ciphertext": "00"},
    {"iv": "00" * 8, "ciphertext": "00" * 20},
])
def test_malformed_encrypted_payload(payload):
    with pytest.raises(DecryptionError):
        crypto.decrypt_message(payload, bytes(32))
