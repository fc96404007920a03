"""
hashhello - Backup bundles.

A backup bundle is a plaintext JSON file for moving an account to another
device. It carries the identity keys, the decrypted chat histories and
the contact book:

    {
      "identity": {"phoneNumber", "privateKeyJwk", "publicKeyJwk"},
      "chats": {peerId: {id, messages, status, unread, lastMessage, timestamp}},
      "contacts": {peerId: name},
      "timestamp": <ms>,
      "version": 1
    }

Importing a bundle yields a ``PendingImport`` that is handed to account
creation, which encrypts its contents under the newly chosen password.
The bundle is not encrypted; whoever holds the file holds the account.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from .constants import BACKUP_VERSION
from .errors import ErrorCode, InvalidCredentialError, StorageError
from .identity import Identity
from .message import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingImport:
    """
    Account data read from a backup, waiting for a new master password.

    Attributes:
        credential: Login credential for the imported identity
        chats: Session snapshot, if the bundle carried chats
        contacts: Contact names, if the bundle carried contacts
    """

    credential: str
    chats: Optional[Dict[str, Any]] = None
    contacts: Optional[Dict[str, str]] = None


def export_bundle(identity: Identity, sessions_snapshot: Dict[str, Any],
                  contacts: Dict[str, str]) -> Dict[str, Any]:
    """Build a backup bundle."""
    credential = identity.to_dict()
    return {
        "identity": {
            "phoneNumber": credential["phoneNumber"],
            "privateKeyJwk": credential["privateKey"],
            "publicKeyJwk": credential["publicKey"],
        },
        "chats": sessions_snapshot,
        "contacts": contacts,
        "timestamp": now_ms(),
        "version": BACKUP_VERSION,
    }


async def write_bundle(path: Path, bundle: Dict[str, Any]) -> Path:
    """
    Write a bundle to disk atomically.

    Raises:
        StorageError: If the file cannot be written
    """
    path = Path(path).expanduser()
    temp_file = f"{path}.tmp"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(json.dumps(bundle, indent=2, ensure_ascii=False))
        os.replace(temp_file, path)
    except OSError as e:
        logger.error(f"Failed to write backup: {e}")
        raise StorageError(ErrorCode.E004_FILE_WRITE_ERROR, f"Cannot write backup: {e}") from e

    logger.info(f"Backup written to {path}")
    return path


def parse_bundle(text: str) -> PendingImport:
    """
    Parse a backup bundle and check its identity keys import.

    Raises:
        InvalidCredentialError: If the bundle is not valid JSON, lacks an
            identity, or its key material cannot be imported
    """
    try:
        bundle = json.loads(text)
    except ValueError as e:
        raise InvalidCredentialError(f"Backup is not valid JSON: {e}") from e

    if not isinstance(bundle, dict) or not isinstance(bundle.get("identity"), dict):
        raise InvalidCredentialError("Backup has no identity section")

    version = bundle.get("version", BACKUP_VERSION)
    if version != BACKUP_VERSION:
        logger.warning(f"Backup version {version} differs from {BACKUP_VERSION}, importing anyway")

    section = bundle["identity"]
    identity = Identity.from_dict(
        {
            "phoneNumber": section.get("phoneNumber"),
            "privateKey": section.get("privateKeyJwk"),
            "publicKey": section.get("publicKeyJwk"),
        }
    )

    chats = bundle.get("chats")
    contacts = bundle.get("contacts")
    pending = PendingImport(
        credential=identity.login_credential(),
        chats=chats if isinstance(chats, dict) else None,
        contacts=contacts if isinstance(contacts, dict) else None,
    )
    logger.info(
        f"Backup for {identity.formatted_number} parsed: "
        f"{len(pending.chats or {})} chat(s), {len(pending.contacts or {})} contact(s)"
    )
    return pending


async def read_bundle(path: Path) -> PendingImport:
    """
    Read and parse a backup file.

    Raises:
        StorageError: If the file cannot be read
        InvalidCredentialError: If the contents are not a usable bundle
    """
    path = Path(path).expanduser()
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
    except OSError as e:
        raise StorageError(ErrorCode.E003_FILE_NOT_FOUND, f"Cannot read backup: {e}") from e
    return parse_bundle(text)
