"""
hashhello - Application client.

``HelloClient`` ties the pieces together for a front-end: account
creation and login against encrypted storage, the session registry over
a transport, sending text and attachments, and backups. Every change to
sessions or contacts is written back to storage in full.
"""

import asyncio
import contextlib
import logging
import mimetypes
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union

import aiofiles

from .backup import PendingImport, export_bundle, write_bundle
from .codec import MessageCodec
from .config import Config
from .contact import ContactBook
from .errors import ErrorCode, HandshakeError, IdentityError, PayloadTooLargeError, StorageError
from .identity import Identity, IdentityManager
from .message import AudioPayload, ImagePayload, Message, TextPayload, to_data_url
from .registry import MultiSessionRegistry
from .session import PeerSession
from .storage import SecureStorage
from .transport import Transport
from .utils import normalize_dial_input

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Transport]

_SESSIONS = "sessions"
_CONTACTS = "contacts"


def _normalize_snapshot(snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for peer_id, data in (snapshot or {}).items():
        if isinstance(data, dict):
            result[peer_id] = {**data, "id": peer_id, "status": "disconnected"}
    return result


class HelloClient:
    """
    Front-end facing client for one local account.

    Attributes:
        config: Loaded configuration
        storage: Encrypted storage in the data directory
        contacts: Contact book
        registry: Session registry, available after start()
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 config: Optional[Config] = None):
        if config is None:
            config = Config.for_data_dir(Path(data_dir)) if data_dir else Config()
        self.config = config
        self.data_dir = Path(data_dir).expanduser() if data_dir else config.data_dir

        self.storage = SecureStorage(self.data_dir, config.get("storage", "pbkdf2_iterations"))
        self.identity_manager = IdentityManager()
        self.contacts = ContactBook(on_change=lambda: self._schedule_save(_CONTACTS))
        self.codec = MessageCodec(config.get("limits", "max_attachment_size"))
        self.transport_factory = transport_factory

        self.transport: Optional[Transport] = None
        self.registry: Optional[MultiSessionRegistry] = None
        self._stored_sessions: Dict[str, Any] = {}
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending_saves: Set[str] = set()
        self._save_tasks: Set[asyncio.Task] = set()

        self.on_message: Optional[Callable[[str, Message], None]] = None
        self.on_security_alert: Optional[Callable[[str, HandshakeError], None]] = None

    @property
    def identity(self) -> Optional[Identity]:
        return self.identity_manager.identity

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise IdentityError(ErrorCode.E305_INVALID_IDENTITY, "Not logged in")
        return self.identity

    def _require_registry(self) -> MultiSessionRegistry:
        if self.registry is None:
            raise StorageError(ErrorCode.E403_STORAGE_LOCKED, "Client is not started")
        return self.registry

    # -- account ----------------------------------------------------------

    async def create_account(self, password: str, pending: Optional[PendingImport] = None,
                             overwrite: bool = False, credential: Optional[str] = None) -> Identity:
        """
        Create a new account, or adopt an existing identity, under a new password.

        With neither ``pending`` nor ``credential`` a fresh identity is
        generated.

        Args:
            password: New master password
            pending: Account data parsed from a backup bundle
            overwrite: Replace an identity already stored in the data directory
            credential: Login key of an existing identity; no chats or contacts
                are carried over

        Raises:
            ValueError: If both pending and credential are given
            InvalidCredentialError: If the credential cannot be imported
            StorageError: If an identity exists and overwrite is False
        """
        if pending is not None and credential is not None:
            raise ValueError("Give either a backup or a login key, not both")
        if pending is not None:
            credential = pending.credential

        if credential is not None:
            identity = self.identity_manager.import_credential(credential)
        else:
            identity = self.identity_manager.generate()

        await self.storage.create(password, identity.to_dict(), overwrite=overwrite)

        self._stored_sessions = _normalize_snapshot(pending.chats if pending else None)
        self.contacts.load(pending.contacts if pending and pending.contacts else {})
        await self.storage.save_sessions(self._stored_sessions)
        await self.storage.save_contacts(self.contacts.to_dict())
        await self.storage.write_saved_numeric_id(identity.numeric_id)

        logger.info(f"Account {identity.formatted_number} created")
        return identity

    async def login(self, password: str) -> Identity:
        """
        Unlock storage and load the identity, sessions and contacts.

        Raises:
            WrongPasswordError: If the password is wrong; nothing is written
            CorruptDataError: If a stored blob cannot be read
        """
        payload = await self.storage.unlock(password)
        identity = Identity.from_dict(payload)
        self.identity_manager.identity = identity

        self._stored_sessions = _normalize_snapshot(await self.storage.load_sessions())
        self.contacts.load(await self.storage.load_contacts())
        await self.storage.write_saved_numeric_id(identity.numeric_id)

        logger.info(f"Logged in as {identity.formatted_number}")
        return identity

    async def change_password(self, old_password: str, new_password: str) -> None:
        await self.flush()
        await self.storage.change_password(old_password, new_password)

    def saved_numeric_id(self) -> Optional[str]:
        return self.storage.saved_numeric_id()

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> MultiSessionRegistry:
        """
        Bring up the transport and registry and start the reconnect loop.

        Raises:
            IdentityError: If not logged in
            ValueError: If no transport factory was given
        """
        identity = self._require_identity()
        if self.registry is not None:
            return self.registry
        if self.transport_factory is None:
            raise ValueError("A transport factory is required to start the client")

        self.transport = self.transport_factory(identity.numeric_id)
        registry = MultiSessionRegistry(
            identity,
            self.transport,
            codec=self.codec,
            reconnect_interval=self.config.get("network", "reconnect_interval"),
            connect_timeout=self.config.get("network", "connect_timeout"),
            handshake_timeout=self.config.get("network", "handshake_timeout"),
        )
        registry.restore(self._stored_sessions)
        registry.on_change = lambda peer_id: self._schedule_save(_SESSIONS)
        registry.on_message = self._message_received
        registry.on_security_alert = self._security_alert
        self.registry = registry

        self._reconnect_task = asyncio.get_running_loop().create_task(registry.run_reconnect_loop())
        logger.info("Client started")
        return registry

    async def stop(self) -> None:
        """Stop reconnecting, close every session and write final state."""
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None

        if self.registry is not None:
            self._stored_sessions = self.registry.snapshot()
            await self.registry.close_all()
        if self.transport is not None:
            await self.transport.close()

        await self.flush()
        if self.storage.is_unlocked:
            await self.storage.save_sessions(self._stored_sessions)
        self.registry = None
        self.transport = None
        logger.info("Client stopped")

    # -- persistence ------------------------------------------------------

    def sessions_snapshot(self) -> Dict[str, Any]:
        if self.registry is not None:
            return self.registry.snapshot()
        return dict(self._stored_sessions)

    def _schedule_save(self, kind: str) -> None:
        if not self.storage.is_unlocked or kind in self._pending_saves:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, {kind} not saved")
            return
        self._pending_saves.add(kind)
        task = loop.create_task(self._save(kind))
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    async def _save(self, kind: str) -> None:
        await asyncio.sleep(0)
        self._pending_saves.discard(kind)
        try:
            if kind == _SESSIONS:
                self._stored_sessions = self.sessions_snapshot()
                await self.storage.save_sessions(self._stored_sessions)
            else:
                await self.storage.save_contacts(self.contacts.to_dict())
        except StorageError as e:
            logger.error(f"Failed to save {kind}: {e.message}")

    async def flush(self) -> None:
        """Wait for scheduled saves to finish."""
        while self._save_tasks:
            await asyncio.gather(*list(self._save_tasks))

    # -- sessions ---------------------------------------------------------

    async def dial(self, number: str) -> PeerSession:
        return await self._require_registry().dial(number)

    def activate(self, peer_id: Optional[str]) -> Optional[PeerSession]:
        return self._require_registry().activate(peer_id)

    def chats(self) -> List[PeerSession]:
        return self._require_registry().chats()

    def chat_summaries(self) -> List[Dict[str, Any]]:
        """Chat list entries from the current snapshot, most recent first."""
        entries = []
        for peer_id, data in self.sessions_snapshot().items():
            entries.append({
                "id": peer_id,
                "name": self.contacts.display_name(peer_id),
                "status": data.get("status", "disconnected"),
                "unread": data.get("unread", 0),
                "lastMessage": data.get("lastMessage", ""),
                "timestamp": data.get("timestamp", 0),
                "messages": len(data.get("messages", [])),
            })
        return sorted(entries, key=lambda e: e["timestamp"], reverse=True)

    async def network_restored(self) -> int:
        return await self._require_registry().network_restored()

    async def send_text(self, peer_id: str, text: str) -> Message:
        return await self._require_registry().send(normalize_dial_input(peer_id), TextPayload(text))

    async def send_image(self, peer_id: str, source: Union[str, Path, bytes],
                         file_name: Optional[str] = None,
                         mime_type: Optional[str] = None) -> Message:
        """
        Send an image from a file path or raw bytes.

        Raises:
            PayloadTooLargeError: If the image is over the size ceiling
        """
        data, file_name = await self._read_attachment(source, file_name)
        if mime_type is None:
            mime_type = (file_name and mimetypes.guess_type(file_name)[0]) or "application/octet-stream"
        payload = ImagePayload(to_data_url(data, mime_type), file_name)
        return await self._require_registry().send(normalize_dial_input(peer_id), payload)

    async def send_audio(self, peer_id: str, source: Union[str, Path, bytes],
                         mime_type: str = "audio/webm") -> Message:
        """
        Send a voice message from a file path or raw bytes.

        Raises:
            PayloadTooLargeError: If the recording is over the size ceiling
        """
        data, _ = await self._read_attachment(source, None)
        payload = AudioPayload(to_data_url(data, mime_type))
        return await self._require_registry().send(normalize_dial_input(peer_id), payload)

    async def _read_attachment(self, source: Union[str, Path, bytes], file_name: Optional[str]):
        limit = self.codec.max_attachment_size
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
        else:
            path = Path(source).expanduser()
            size = path.stat().st_size
            if size > limit:
                raise PayloadTooLargeError(size, limit)
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
            file_name = file_name or path.name
        if len(data) > limit:
            raise PayloadTooLargeError(len(data), limit)
        return data, file_name

    # -- backup -----------------------------------------------------------

    async def export_backup(self, path: Union[str, Path]) -> Path:
        """Write a plaintext backup bundle of the account."""
        identity = self._require_identity()
        bundle = export_bundle(identity, self.sessions_snapshot(), self.contacts.to_dict())
        return await write_bundle(Path(path), bundle)

    # -- listeners --------------------------------------------------------

    def _message_received(self, peer_id: str, message: Message) -> None:
        if self.on_message:
            self.on_message(peer_id, message)

    def _security_alert(self, peer_id: str, error: HandshakeError) -> None:
        logger.warning(f"Security alert: identity verification failed for {peer_id}")
        if self.on_security_alert:
            self.on_security_alert(peer_id, error)
