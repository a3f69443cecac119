"""Content codecs and header helpers shared by the IMAP and SMTP clients."""

import base64
import binascii
import email.utils
import html
import logging
import re
from email.message import Message
from email.parser import BytesHeaderParser
from email.policy import compat32
from typing import List, Optional, Union

from mailwire.models import EmailAddress, decode_mime_header

logger = logging.getLogger(__name__)

BASE64_LINE_WIDTH = 76

_NON_BASE64 = re.compile(rb"[^A-Za-z0-9+/]")


def b64encode_lines(data: bytes, width: int = BASE64_LINE_WIDTH) -> str:
    """Base64-encode *data* into CRLF-separated lines of at most *width* chars."""
    encoded = base64.b64encode(data).decode("ascii")
    return "\r\n".join(encoded[i : i + width] for i in range(0, len(encoded), width))


def b64decode_lenient(data: Union[bytes, str]) -> bytes:
    """Decode base64, ignoring line breaks, junk characters and bad padding.

    A trailing partial quantum (as produced by a byte-capped fetch) is
    re-padded, or dropped when it is a single character, instead of
    failing the whole decode.
    """
    if isinstance(data, str):
        data = data.encode("ascii", errors="ignore")
    clean = _NON_BASE64.sub(b"", data)
    remainder = len(clean) % 4
    if remainder == 1:
        clean = clean[:-1]
    elif remainder:
        clean += b"=" * (4 - remainder)
    return base64.b64decode(clean)


def qp_decode(data: Union[bytes, str]) -> bytes:
    """Decode quoted-printable content, honouring soft line breaks."""
    if isinstance(data, str):
        data = data.encode("latin-1", errors="replace")
    return binascii.a2b_qp(data)


def qp_encode(data: bytes) -> str:
    """Quoted-printable encode *data* using CRLF line endings."""
    normalized = re.sub(rb"\r?\n", b"\r\n", data)
    return binascii.b2a_qp(normalized, istext=True).decode("ascii")


def decode_transfer_encoding(data: bytes, encoding: Optional[str]) -> bytes:
    """Undo a Content-Transfer-Encoding; unknown encodings pass through."""
    enc = (encoding or "").strip().lower()
    if enc == "base64":
        return b64decode_lenient(data)
    if enc == "quoted-printable":
        return qp_decode(data)
    return data


def decode_text(data: bytes, charset: Optional[str]) -> str:
    """Decode bytes with *charset*, falling back to UTF-8 with replacement."""
    try:
        return data.decode(charset or "utf-8", errors="replace")
    except LookupError:
        logger.debug("Unknown charset %r, decoding as utf-8", charset)
        return data.decode("utf-8", errors="replace")


def parse_headers(raw: Union[bytes, str]) -> Message:
    """Parse an RFC 5322 header block (folded lines allowed) into a Message.

    Only the header section is parsed; anything after the first blank line
    is left as an unparsed payload.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="replace")
    return BytesHeaderParser(policy=compat32).parsebytes(raw)


def header_text(headers: Message, name: str) -> Optional[str]:
    """Return a header value with RFC 2047 words decoded, or None if absent."""
    value = headers.get(name)
    if value is None:
        return None
    text = decode_mime_header(str(value)).strip()
    return text or None


def parse_address_list(value: Optional[str]) -> List[EmailAddress]:
    """Split an address-list header value into :class:`EmailAddress` items.

    Unlike :meth:`EmailAddress.parse` this never rejects an entry: mail
    that was already delivered is shown as-is even when malformed.
    """
    if not value:
        return []
    addresses = []
    for name, addr in email.utils.getaddresses([value]):
        if not addr and not name:
            continue
        addresses.append(EmailAddress(name=decode_mime_header(name), address=addr))
    return addresses


def content_filename(headers: Message) -> Optional[str]:
    """Best-effort filename from Content-Disposition or the Content-Type name."""
    filename = headers.get_filename() or headers.get_param("name")
    if isinstance(filename, tuple):
        filename = email.utils.collapse_rfc2231_value(filename)
    if not filename:
        return None
    return decode_mime_header(str(filename))


_TAG = re.compile(r"<[^>]+>")


def _first_text_part(body: bytes, boundary: str, depth: int = 0):
    marker = b"--" + boundary.encode("ascii", errors="replace")
    fallback = None
    for chunk in body.split(marker)[1:]:
        if chunk.startswith(b"--"):
            break
        head, sep, rest = chunk.lstrip(b"\r\n").partition(b"\r\n\r\n")
        if not sep:
            continue
        headers = parse_headers(head + b"\r\n\r\n")
        ctype = headers.get_content_type()
        if ctype == "text/plain":
            return headers, rest
        if ctype.startswith("multipart/") and depth < 3 and headers.get_boundary():
            nested = _first_text_part(rest, headers.get_boundary(), depth + 1)
            if nested is not None and nested[0].get_content_type() == "text/plain":
                return nested
            fallback = fallback or nested
        elif ctype == "text/html" and fallback is None:
            fallback = (headers, rest)
    return fallback


def preview_text(headers: Message, body: bytes) -> str:
    """Best-effort readable text from the (possibly truncated) start of a body.

    *headers* are the message's top-level headers. For multipart messages
    the first text/plain part found in *body* is used, falling back to
    text/html with tags stripped and entities decoded. Whitespace is collapsed to single spaces.
    """
    if headers.get_content_maintype() == "multipart" and headers.get_boundary():
        part = _first_text_part(body, headers.get_boundary())
        if part is None:
            return ""
        headers, body = part

    data = decode_transfer_encoding(body, headers.get("Content-Transfer-Encoding"))
    text = decode_text(data, headers.get_content_charset())
    if headers.get_content_type() == "text/html":
        text = html.unescape(_TAG.sub(" ", text))
    return " ".join(text.split())
