"""
hashhello - Contact book tests.
"""

import pytest

from hashhello.contact import ContactBook
from hashhello.errors import HelloError, InvalidPeerIdError


def test_set_and_get_name():
    changes = []
    book = ContactBook(on_change=lambda: changes.append(1))

    peer_id = book.set_name("#123 456 789", "  Alice  ")

    assert peer_id == "123456789"
    assert book.get_name("123456789") == "Alice"
    assert "123456789" in book
    assert len(book) == 1
    assert changes == [1]


def test_rename_and_unchanged_name():
    changes = []
    book = ContactBook(on_change=lambda: changes.append(1))
    book.set_name("123456789", "Alice")
    book.set_name("123456789", "Alice")
    book.set_name("123456789", "Alicia")

    assert book.get_name("123456789") == "Alicia"
    assert len(changes) == 2


def test_name_is_truncated():
    book = ContactBook()
    book.set_name("123456789", "x" * 150)
    assert len(book.get_name("123456789")) == 100


@pytest.mark.parametrize("number", ["12345", "", "abcdefghi"])
def test_invalid_number(number):
    with pytest.raises(InvalidPeerIdError):
        ContactBook().set_name(number, "Alice")


def test_empty_name():
    with pytest.raises(HelloError):
        ContactBook().set_name("123456789", "   ")


def test_remove():
    book = ContactBook()
    book.set_name("123456789", "Alice")

    assert book.remove("123-456-789")
    assert not book.remove("123456789")
    assert book.get_name("123456789") is None


def test_display_name_falls_back_to_number():
    book = ContactBook()
    book.set_name("123456789", "Alice")

    assert book.display_name("123456789") == "Alice"
    assert book.display_name("000000042") == "#000 000 042"


def test_all_sorted_by_name():
    book = ContactBook()
    book.set_name("111111111", "carol")
    book.set_name("222222222", "Alice")
    book.set_name("333333333", "bob")

    assert [name for _, name in book.all()] == ["Alice", "bob", "carol"]


def test_load_skips_invalid_entries_without_notifying():
    changes = []
    book = ContactBook.from_dict(
        {"123456789": "Alice", "bad": "Nobody", "987654321": "", "111222333": 5},
        on_change=lambda: changes.append(1),
    )

    assert book.to_dict() == {"123456789": "Alice"}
    assert changes == []
