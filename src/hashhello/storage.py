"""
hashhello - Encrypted local storage.

Everything persisted about the user (identity, session histories,
contacts) is encrypted with AES-256-GCM under a key derived from the
master password with PBKDF2-HMAC-SHA256. Each blob is a JSON file in the
data directory:

- ``identity.json``: ``{salt, iterations, iv, data}``
- ``sessions.json``: ``{iv, data}``
- ``contacts.json``: ``{iv, data}``

All three are encrypted under the key derived from the identity blob's
salt and iteration count. Blobs are rewritten in full on every save,
through a temporary file and an atomic rename, so a failed operation never
leaves a partial blob. Only the ``saved_id`` hint is plaintext.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import aiofiles
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .constants import (
    CONTACTS_BLOB,
    DEFAULT_DATA_DIR,
    IDENTITY_BLOB,
    KEY_SIZE,
    NONCE_SIZE,
    PBKDF2_ITERATIONS,
    PBKDF2_MIN_ITERATIONS,
    SALT_SIZE,
    SAVED_ID_FILENAME,
    SESSIONS_BLOB,
)
from .errors import CorruptDataError, ErrorCode, StorageError, WrongPasswordError

logger = logging.getLogger(__name__)


class StorageKey:
    """
    AES-256-GCM key derived from the master password.

    The raw key bytes are held only by the cipher object and never
    returned to callers.
    """

    __slots__ = ("_cipher",)

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Storage key must be {KEY_SIZE} bytes")
        self._cipher = AESGCM(key)

    def encrypt(self, plaintext: bytes) -> Tuple[bytes, bytes]:
        nonce = os.urandom(NONCE_SIZE)
        return nonce, self._cipher.encrypt(nonce, plaintext, None)

    def decrypt(self, nonce: bytes, ciphertext: bytes) -> bytes:
        """
        Raises:
            InvalidTag: If authentication fails
        """
        return self._cipher.decrypt(nonce, ciphertext, None)

    def __repr__(self) -> str:
        return "StorageKey(<hidden>)"


def derive_storage_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> StorageKey:
    """
    Derive the storage key with PBKDF2-HMAC-SHA256.

    Raises:
        ValueError: If iterations is below the minimum
    """
    if iterations < PBKDF2_MIN_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {PBKDF2_MIN_ITERATIONS}")
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, iterations=iterations)
    return StorageKey(kdf.derive(password.encode("utf-8")))


async def derive_storage_key_async(password: str, salt: bytes,
                                   iterations: int = PBKDF2_ITERATIONS) -> StorageKey:
    """Run :func:`derive_storage_key` in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, derive_storage_key, password, salt, iterations)


def encrypt_blob(data: Any, key: StorageKey) -> Dict[str, str]:
    """Encrypt a JSON-serializable value into ``{iv, data}``."""
    plaintext = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    nonce, ciphertext = key.encrypt(plaintext)
    return {
        "iv": base64.b64encode(nonce).decode("ascii"),
        "data": base64.b64encode(ciphertext).decode("ascii"),
    }


def _open_blob(blob: Any, key: StorageKey) -> Any:
    # InvalidTag propagates so callers can tell a wrong key from a bad blob
    if not isinstance(blob, dict):
        raise CorruptDataError("Blob must be an object")
    try:
        nonce = base64.b64decode(blob["iv"], validate=True)
        ciphertext = base64.b64decode(blob["data"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise CorruptDataError(f"Malformed blob: {e}") from e
    if len(nonce) != NONCE_SIZE:
        raise CorruptDataError("Malformed blob: bad nonce length")

    plaintext = key.decrypt(nonce, ciphertext)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise CorruptDataError(f"Blob does not contain JSON: {e}") from e


def decrypt_blob(blob: Dict[str, str], key: StorageKey) -> Any:
    """
    Decrypt a blob produced by :func:`encrypt_blob`.

    Raises:
        CorruptDataError: If the blob is malformed or fails authentication
    """
    try:
        return _open_blob(blob, key)
    except InvalidTag as e:
        raise CorruptDataError("Blob failed authentication") from e


class SecureStorage:
    """
    Password-protected blob store in a data directory.

    Attributes:
        data_dir: Directory holding the blob files
        iterations: PBKDF2 iteration count for new keys. An existing
            identity blob is always opened with the count stored in it.
    """

    def __init__(self, data_dir: Optional[Path] = None, iterations: int = PBKDF2_ITERATIONS):
        if iterations < PBKDF2_MIN_ITERATIONS:
            raise ValueError(f"PBKDF2 iterations must be at least {PBKDF2_MIN_ITERATIONS}")
        self.data_dir = Path(data_dir or DEFAULT_DATA_DIR).expanduser()
        self.iterations = iterations
        self._key: Optional[StorageKey] = None
        self._salt: Optional[bytes] = None
        self._key_iterations = iterations
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def _require_key(self) -> StorageKey:
        if self._key is None:
            raise StorageError(ErrorCode.E403_STORAGE_LOCKED, "Storage is locked")
        return self._key

    def has_identity(self) -> bool:
        return self._path(IDENTITY_BLOB).exists()

    async def _read_json(self, name: str) -> Optional[Any]:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise StorageError(ErrorCode.E400_STORAGE_ERROR, f"Cannot read {name}: {e}") from e
        try:
            return json.loads(content)
        except ValueError as e:
            raise CorruptDataError(f"{name} is not valid JSON", {"file": name}) from e

    async def _write_json(self, name: str, data: Any) -> None:
        path = self._path(name)
        async with self._lock(name):
            try:
                self.data_dir.mkdir(parents=True, exist_ok=True)
                temp_file = f"{path}.tmp"
                async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(data, indent=2))
                os.replace(temp_file, path)
            except OSError as e:
                logger.error(f"Failed to write {name}: {e}")
                raise StorageError(ErrorCode.E004_FILE_WRITE_ERROR, f"Cannot write {name}: {e}") from e
        logger.debug(f"Wrote {name}")

    async def create(self, password: str, identity_payload: Dict[str, Any],
                     overwrite: bool = False) -> None:
        """
        Set up storage for a new identity under a new master password.

        Blobs left over from a previous identity are removed.

        Raises:
            StorageError: If an identity exists and overwrite is False
        """
        if self.has_identity() and not overwrite:
            raise StorageError(
                ErrorCode.E400_STORAGE_ERROR,
                "An identity already exists in this data directory",
                {"data_dir": str(self.data_dir)},
            )
        salt = os.urandom(SALT_SIZE)
        key = await derive_storage_key_async(password, salt, self.iterations)

        for name in (SESSIONS_BLOB, CONTACTS_BLOB):
            self._remove(name)

        self._key, self._salt = key, salt
        self._key_iterations = self.iterations
        await self.save_identity(identity_payload)
        logger.info("Encrypted storage created")

    async def unlock(self, password: str) -> Dict[str, Any]:
        """
        Derive the key from the master password and open the identity blob.

        Files are only read, never written.

        Raises:
            StorageError: If no identity is stored (E404)
            WrongPasswordError: If the password does not decrypt the blob
            CorruptDataError: If the blob is malformed
        """
        blob = await self._read_json(IDENTITY_BLOB)
        if blob is None:
            raise StorageError(ErrorCode.E404_NO_IDENTITY, "No identity stored")
        if not isinstance(blob, dict):
            raise CorruptDataError("Identity blob must be an object")

        try:
            salt = base64.b64decode(blob["salt"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise CorruptDataError(f"Identity blob has no usable salt: {e}") from e

        iterations = blob.get("iterations", PBKDF2_ITERATIONS)
        if isinstance(iterations, bool) or not isinstance(iterations, int) \
                or iterations < PBKDF2_MIN_ITERATIONS:
            raise CorruptDataError(
                "Identity blob has an invalid iteration count", {"iterations": iterations}
            )

        key = await derive_storage_key_async(password, salt, iterations)
        try:
            payload = _open_blob(blob, key)
        except InvalidTag as e:
            logger.warning("Unlock failed: wrong password")
            raise WrongPasswordError() from e

        self._key, self._salt = key, salt
        self._key_iterations = iterations
        logger.info("Storage unlocked")
        return payload

    def lock(self) -> None:
        self._key = None
        self._salt = None

    async def save_identity(self, identity_payload: Dict[str, Any]) -> None:
        key = self._require_key()
        blob = encrypt_blob(identity_payload, key)
        blob = {
            "salt": base64.b64encode(self._salt).decode("ascii"),
            "iterations": self._key_iterations,
            **blob,
        }
        await self._write_json(IDENTITY_BLOB, blob)

    async def save_sessions(self, snapshot: Dict[str, Any]) -> None:
        await self._write_json(SESSIONS_BLOB, encrypt_blob(snapshot, self._require_key()))

    async def load_sessions(self) -> Dict[str, Any]:
        return await self._load_blob(SESSIONS_BLOB)

    async def save_contacts(self, contacts: Dict[str, str]) -> None:
        await self._write_json(CONTACTS_BLOB, encrypt_blob(contacts, self._require_key()))

    async def load_contacts(self) -> Dict[str, str]:
        return await self._load_blob(CONTACTS_BLOB)

    async def _load_blob(self, name: str) -> Dict[str, Any]:
        key = self._require_key()
        blob = await self._read_json(name)
        if blob is None:
            return {}
        data = decrypt_blob(blob, key)
        if not isinstance(data, dict):
            raise CorruptDataError(f"{name} does not contain an object", {"file": name})
        return data

    async def change_password(self, old_password: str, new_password: str) -> None:
        """
        Re-encrypt every blob under a key derived from a new password.

        The new key uses the configured iteration count, whatever count the
        old blob was stored with.

        Raises:
            WrongPasswordError: If old_password is wrong; nothing is written
        """
        identity_payload = await self.unlock(old_password)
        sessions = await self.load_sessions()
        contacts = await self.load_contacts()

        salt = os.urandom(SALT_SIZE)
        key = await derive_storage_key_async(new_password, salt, self.iterations)
        self._key, self._salt = key, salt
        self._key_iterations = self.iterations

        await self.save_identity(identity_payload)
        await self.save_sessions(sessions)
        await self.save_contacts(contacts)
        logger.info("Master password changed")

    def saved_numeric_id(self) -> Optional[str]:
        """The plaintext id hint shown on the unlock prompt, if any."""
        path = self._path(SAVED_ID_FILENAME)
        try:
            value = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Cannot read saved id: {e}")
            return None
        return value or None

    async def write_saved_numeric_id(self, numeric_id: str) -> None:
        async with self._lock(SAVED_ID_FILENAME):
            self.data_dir.mkdir(parents=True, exist_ok=True)
            path = self._path(SAVED_ID_FILENAME)
            temp_file = f"{path}.tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(numeric_id)
            os.replace(temp_file, path)

    def _remove(self, name: str) -> None:
        try:
            self._path(name).unlink()
        except FileNotFoundError:
            pass

    async def wipe(self) -> None:
        """Delete every blob and the id hint."""
        for name in (IDENTITY_BLOB, SESSIONS_BLOB, CONTACTS_BLOB, SAVED_ID_FILENAME):
            async with self._lock(name):
                self._remove(name)
        self.lock()
        logger.info("Storage wiped")
