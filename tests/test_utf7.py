"""Tests for the modified UTF-7 mailbox name codec."""

import pytest

from mailwire import utf7


@pytest.mark.parametrize(
    "name, wire",
    [
        ("INBOX", "INBOX"),
        ("Tom & Jerry", "Tom &- Jerry"),
        ("~peter/mail/台北/日本語", "~peter/mail/&U,BTFw-/&ZeVnLIqe-"),
        ("Entwürfe", "Entw&APw-rfe"),
        ("Отправленные", "&BB4EQgQ,BEAEMAQyBDsENQQ9BD0ESwQ1-"),
    ],
)
def test_known_encodings(name, wire):
    assert utf7.encode(name) == wire
    assert utf7.decode(wire) == name


def test_ascii_passes_through():
    assert utf7.decode("Sent Items") == "Sent Items"


def test_unterminated_shift_kept_verbatim():
    assert utf7.decode("Bad&Name") == "Bad&Name"


def test_astral_characters_use_surrogate_pairs():
    name = "Mail \U0001F4E7"
    assert utf7.decode(utf7.encode(name)) == name


@pytest.mark.parametrize("name", ["Заметки", "Входящие/Заметки", "Notes & Заметки"])
def test_cyrillic_round_trip(name):
    wire = utf7.encode(name)
    assert wire.isascii()
    assert utf7.decode(wire) == name


def test_shifted_run_is_delimited():
    wire = utf7.encode("Заметки")
    assert wire.startswith("&")
    assert wire.endswith("-")
    assert utf7.encode("&") == "&-"
