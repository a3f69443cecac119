"""Tests for data models."""

import unittest
from email.header import Header

from mailwire.models import (
    Capabilities,
    EmailAddress,
    Envelope,
    IdleEvent,
    OutgoingMessage,
    StoreMode,
    decode_mime_header,
)


class TestModels(unittest.TestCase):
    """Test cases for data models."""

    def test_decode_mime_header(self) -> None:
        """Test MIME header decoding."""
        # Test ASCII header
        self.assertEqual(decode_mime_header("Hello"), "Hello")

        # Test encoded header
        encoded_header = Header("Héllö Wörld", "utf-8").encode()
        self.assertEqual(decode_mime_header(encoded_header), "Héllö Wörld")

        # Test unknown charset falls back to utf-8
        self.assertEqual(decode_mime_header("=?x-unknown?q?abc?="), "abc")

        # Test empty header
        self.assertEqual(decode_mime_header(None), "")
        self.assertEqual(decode_mime_header(""), "")

    def test_email_address_parse(self) -> None:
        """Test email address parsing."""
        # Test name + address
        addr = EmailAddress.parse("John Doe <john@example.com>")
        self.assertEqual(addr.name, "John Doe")
        self.assertEqual(addr.address, "john@example.com")

        # Test quoted name
        addr = EmailAddress.parse('"Smith, John" <john@example.com>')
        self.assertEqual(addr.name, "Smith, John")
        self.assertEqual(addr.address, "john@example.com")

        # Test address only
        addr = EmailAddress.parse("jane@example.com")
        self.assertEqual(addr.name, "")
        self.assertEqual(addr.address, "jane@example.com")

        # Test string conversion
        self.assertEqual(str(EmailAddress("Jane Smith", "jane@example.com")), "Jane Smith <jane@example.com>")
        self.assertEqual(str(EmailAddress("", "jane@example.com")), "jane@example.com")

    def test_email_address_invalid(self) -> None:
        """Test that malformed addresses are rejected."""
        with self.assertRaises(ValueError):
            EmailAddress.parse("no-at-sign")
        with self.assertRaises(ValueError):
            EmailAddress.parse("Bad <two@@example.com>")

    def test_capabilities_parse(self) -> None:
        """Test capability flags and AUTH mechanisms."""
        caps = Capabilities.parse(["IMAP4rev1", "auth=plain", "AUTH=XOAUTH2", "Idle", "UIDPLUS"])
        self.assertEqual(caps.auth, frozenset({"PLAIN", "XOAUTH2"}))
        self.assertTrue(caps.idle)
        self.assertTrue(caps.uidplus)
        self.assertFalse(caps.literal_plus)
        self.assertIn("IMAP4REV1", caps.raw)

    def test_envelope_seen(self) -> None:
        self.assertTrue(Envelope(uid=1, flags=("\\Seen", "\\Flagged")).seen)
        self.assertFalse(Envelope(uid=2).seen)

    def test_store_mode(self) -> None:
        self.assertIs(StoreMode("+FLAGS"), StoreMode.ADD)
        self.assertEqual(StoreMode.REPLACE.value, "FLAGS")
        with self.assertRaises(ValueError):
            StoreMode("FLAGS.SILENT")

    def test_idle_event_equality(self) -> None:
        self.assertEqual(IdleEvent("exists", 4), IdleEvent("exists", 4))
        self.assertNotEqual(IdleEvent("exists", 4), IdleEvent("expunge", 4))

    def test_outgoing_recipients(self) -> None:
        """Test that envelope recipients include to, cc and bcc in order."""
        msg = OutgoingMessage(
            from_addr="me@example.com",
            to=["a@example.com"],
            cc=["b@example.com"],
            bcc=["c@example.com", "d@example.com"],
        )
        self.assertEqual(
            msg.recipients,
            ["a@example.com", "b@example.com", "c@example.com", "d@example.com"],
        )


if __name__ == "__main__":
    unittest.main()
