"""Data models for mail protocol results and outgoing messages."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email.header import decode_header
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from email_validator import EmailNotValidError, validate_email

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_SIZE = 25 * 1024 * 1024  # 25 MB


def decode_mime_header(header_value: Optional[str]) -> str:
    """Decode a MIME header value.

    Args:
        header_value: MIME header value

    Returns:
        Decoded header value
    """
    if not header_value:
        return ""

    decoded_parts = []
    for part, encoding in decode_header(header_value):
        if isinstance(part, bytes):
            if encoding:
                try:
                    decoded_parts.append(part.decode(encoding))
                except (LookupError, UnicodeDecodeError):
                    # If the encoding is not recognized, try with utf-8
                    decoded_parts.append(part.decode("utf-8", errors="replace"))
            else:
                decoded_parts.append(part.decode("utf-8", errors="replace"))
        else:
            decoded_parts.append(part)

    return "".join(decoded_parts)


@dataclass
class EmailAddress:
    """Email address representation."""

    name: str
    address: str

    @classmethod
    def parse(cls, address_str: str) -> "EmailAddress":
        """Parse email address string.

        Args:
            address_str: Email address string (e.g., "John Doe <john@example.com>")

        Returns:
            EmailAddress object

        Raises:
            ValueError: If the email address format is invalid.
        """
        name = ""
        address = address_str.strip()

        # Extract name and address with angle brackets
        match = re.match(r'"?([^"<]*)"?\s*<([^>]*)>', address_str.strip())
        if match:
            name = match.group(1).strip()
            address = match.group(2).strip()

        if "@" in address:
            try:
                result = validate_email(address, check_deliverability=False)
                address = result.normalized
            except EmailNotValidError as e:
                raise ValueError(f"Invalid email address '{address}': {e}") from e
        else:
            raise ValueError(f"Invalid email address: '{address}' (missing @)")

        return cls(name=name, address=address)

    def __str__(self) -> str:
        """Return string representation."""
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


@dataclass(frozen=True)
class Capabilities:
    """What the server announced in its CAPABILITY response."""

    auth: FrozenSet[str] = frozenset()
    idle: bool = False
    literal_plus: bool = False
    uidplus: bool = False
    raw: FrozenSet[str] = frozenset()

    @classmethod
    def parse(cls, tokens: List[str]) -> "Capabilities":
        upper = [t.upper() for t in tokens]
        return cls(
            auth=frozenset(t[5:] for t in upper if t.startswith("AUTH=")),
            idle="IDLE" in upper,
            literal_plus="LITERAL+" in upper,
            uidplus="UIDPLUS" in upper,
            raw=frozenset(upper),
        )


@dataclass(frozen=True)
class MailboxSelection:
    """State of the currently selected mailbox as of the last SELECT."""

    name: str
    exists: int = 0
    unseen: Optional[int] = None


@dataclass(frozen=True)
class MailboxInfo:
    """One entry of a LIST response."""

    name: str
    path: str
    delimiter: Optional[str]
    attributes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Envelope:
    """Summary of one message, as returned by an envelope fetch."""

    uid: int
    flags: Tuple[str, ...] = ()
    size: Optional[int] = None
    date: Optional[datetime] = None
    subject: Optional[str] = None
    from_: Tuple[EmailAddress, ...] = ()
    to: Tuple[EmailAddress, ...] = ()
    cc: Tuple[EmailAddress, ...] = ()
    bcc: Tuple[EmailAddress, ...] = ()
    in_reply_to: Optional[str] = None
    message_id: Optional[str] = None
    preview: Optional[str] = None
    has_attachments: bool = False

    @property
    def seen(self) -> bool:
        return "\\Seen" in self.flags


@dataclass(frozen=True)
class FetchBodySpec:
    """Which body to fetch.

    ``part`` is a MIME part path such as ``"1.2"``; None means the whole
    message. ``max_bytes`` of 0 means no cap.
    """

    uid: int
    part: Optional[str] = None
    max_bytes: int = 0


@dataclass(frozen=True)
class BodyResult:
    """Raw bytes of a fetched body or body part."""

    uid: int
    part: Optional[str]
    data: bytes
    truncated: bool = False
    content_type: Optional[str] = None
    filename: Optional[str] = None


class StoreMode(str, Enum):
    """How UID STORE combines the given flags with the existing ones."""

    ADD = "+FLAGS"
    REMOVE = "-FLAGS"
    REPLACE = "FLAGS"


@dataclass(frozen=True)
class AppendOptions:
    """Optional flags and internal date for APPEND."""

    flags: Tuple[str, ...] = ()
    date: Optional[datetime] = None


@dataclass(frozen=True)
class IdleEvent:
    """A mailbox change pushed by the server while idling.

    ``kind`` is ``"exists"`` (new message count) or ``"expunge"`` (the
    sequence number of a removed message).
    """

    kind: str
    number: int


@dataclass
class Attachment:
    """A file to attach to an outgoing message."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
    inline: bool = False
    content_id: Optional[str] = None


@dataclass
class OutgoingMessage:
    """Everything needed to submit one message over SMTP."""

    from_addr: str
    to: List[str]
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def recipients(self) -> List[str]:
        """All envelope recipients: to, cc and bcc flattened in that order."""
        return [*self.to, *self.cc, *self.bcc]
