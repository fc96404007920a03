"""
hashhello - Contact book.

Maps peer numeric ids to display names chosen by the local user. The
book lives independently of sessions: a contact can exist without a chat
and a chat without a contact.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from .constants import MAX_CONTACT_NAME_LENGTH
from .crypto import format_numeric_id
from .errors import ErrorCode, HelloError, InvalidPeerIdError
from .utils import normalize_dial_input, validate_numeric_id

logger = logging.getLogger(__name__)


class ContactBook:
    """Manages contact display names."""

    def __init__(self, on_change: Optional[Callable[[], None]] = None):
        self.contacts: Dict[str, str] = {}
        self.on_change = on_change

    def _changed(self) -> None:
        if self.on_change:
            try:
                self.on_change()
            except Exception as e:
                logger.error(f"Contact change callback error: {e}")

    def set_name(self, peer_id: str, name: str) -> str:
        """
        Set (or replace) the display name for a peer.

        Returns:
            The normalized peer id

        Raises:
            InvalidPeerIdError: If peer_id is not a 9-digit number
            HelloError: If the name is empty after trimming
        """
        peer_id = normalize_dial_input(peer_id)
        if not validate_numeric_id(peer_id):
            raise InvalidPeerIdError("Contact number must be exactly 9 digits", {"peer_id": peer_id})

        name = (name or "").strip()[:MAX_CONTACT_NAME_LENGTH]
        if not name:
            raise HelloError(ErrorCode.E002_INVALID_ARGUMENT, "Contact name cannot be empty")

        if self.contacts.get(peer_id) == name:
            return peer_id

        self.contacts[peer_id] = name
        logger.info(f"Saved contact {format_numeric_id(peer_id)}")
        self._changed()
        return peer_id

    def remove(self, peer_id: str) -> bool:
        """Remove a contact. Returns True if it existed."""
        peer_id = normalize_dial_input(peer_id)
        if peer_id not in self.contacts:
            return False
        del self.contacts[peer_id]
        logger.info(f"Removed contact {format_numeric_id(peer_id)}")
        self._changed()
        return True

    def get_name(self, peer_id: str) -> Optional[str]:
        return self.contacts.get(peer_id)

    def display_name(self, peer_id: str) -> str:
        """Contact name if known, otherwise the formatted number."""
        return self.contacts.get(peer_id) or format_numeric_id(peer_id)

    def all(self) -> List[Tuple[str, str]]:
        """All contacts sorted by name."""
        return sorted(self.contacts.items(), key=lambda item: item[1].lower())

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self.contacts

    def __len__(self) -> int:
        return len(self.contacts)

    def to_dict(self) -> Dict[str, str]:
        return dict(self.contacts)

    def load(self, data: Dict[str, str]) -> int:
        """
        Replace the book's contents without notifying the change listener.

        Invalid entries are skipped.

        Returns:
            Number of contacts loaded
        """
        self.contacts = {}
        for peer_id, name in (data or {}).items():
            if validate_numeric_id(peer_id) and isinstance(name, str) and name.strip():
                self.contacts[peer_id] = name.strip()[:MAX_CONTACT_NAME_LENGTH]
            else:
                logger.warning(f"Skipping invalid contact entry {peer_id!r}")
        return len(self.contacts)

    @staticmethod
    def from_dict(data: Dict[str, str], on_change: Optional[Callable[[], None]] = None) -> "ContactBook":
        book = ContactBook(on_change)
        book.load(data)
        return book
