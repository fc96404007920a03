"""
hashhello - Backup bundle tests.
"""

import json

import pytest

from hashhello.backup import export_bundle, parse_bundle, read_bundle, write_bundle
from hashhello.errors import InvalidCredentialError, StorageError
from hashhello.identity import IdentityManager

CHATS = {
    "123456789": {
        "id": "123456789",
        "messages": [{"sender": "me", "content": {"type": "text", "content": "hi"}, "timestamp": 1}],
        "status": "disconnected",
        "unread": 0,
        "lastMessage": "hi",
        "timestamp": 1,
    }
}


def test_export_bundle_shape(alice):
    bundle = export_bundle(alice, CHATS, {"123456789": "Bob"})

    assert bundle["version"] == 1
    assert bundle["identity"]["phoneNumber"] == alice.numeric_id
    assert "d" in bundle["identity"]["privateKeyJwk"]
    assert bundle["identity"]["publicKeyJwk"] == alice.public_jwk
    assert bundle["chats"] == CHATS
    assert bundle["contacts"] == {"123456789": "Bob"}
    assert isinstance(bundle["timestamp"], int)


def test_parse_bundle(alice):
    text = json.dumps(export_bundle(alice, CHATS, {"123456789": "Bob"}))
    pending = parse_bundle(text)

    assert pending.chats == CHATS
    assert pending.contacts == {"123456789": "Bob"}
    assert IdentityManager().import_credential(pending.credential).numeric_id == alice.numeric_id


def test_parse_bundle_without_chats(alice):
    bundle = export_bundle(alice, {}, {})
    del bundle["chats"]
    bundle["contacts"] = "nonsense"

    pending = parse_bundle(json.dumps(bundle))
    assert pending.chats is None
    assert pending.contacts is None


@pytest.mark.parametrize("text", [
    "not json",
    "[]",
    json.dumps({"chats": {}}),
    json.dumps({"identity": {"phoneNumber": "123456789"}}),
])
def test_parse_invalid_bundle(text):
    with pytest.raises(InvalidCredentialError):
        parse_bundle(text)


def test_parse_bundle_with_wrong_number(alice):
    bundle = export_bundle(alice, {}, {})
    bundle["identity"]["phoneNumber"] = "000000000" if alice.numeric_id != "000000000" else "000000001"
    with pytest.raises(InvalidCredentialError):
        parse_bundle(json.dumps(bundle))


@pytest.mark.asyncio
async def test_write_and_read_bundle(alice, temp_dir):
    path = temp_dir / "nested" / "backup.json"
    written = await write_bundle(path, export_bundle(alice, CHATS, {}))

    assert written == path
    assert not (temp_dir / "nested" / "backup.json.tmp").exists()
    pending = await read_bundle(path)
    assert pending.chats == CHATS


@pytest.mark.asyncio
async def test_read_missing_bundle(temp_dir):
    with pytest.raises(StorageError):
        await read_bundle(temp_dir / "missing.json")
