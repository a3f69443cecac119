"""SMTP submission client and RFC 5322 message assembly."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import Header
from email.utils import encode_rfc2231, format_datetime, formataddr, make_msgid
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from mailwire.auth import (
    BearerTokenSource,
    LoginAuth,
    PlainAuth,
    XOAuth2Auth,
    b64,
    plain_payload,
    xoauth2_payload,
)
from mailwire.config import SmtpConfig
from mailwire.errors import (
    AuthenticationError,
    CommandError,
    MailConnectionError,
    MailError,
    NegotiationError,
)
from mailwire.mime import b64encode_lines, qp_encode
from mailwire.models import MAX_ATTACHMENT_SIZE, Attachment, EmailAddress, OutgoingMessage
from mailwire.transport import (
    ConnectParams,
    LineReader,
    Transport,
    WriteQueue,
    with_timeout,
)

logger = logging.getLogger(__name__)

MAX_LINE_OCTETS = 998


@dataclass
class SmtpReply:
    """A complete, possibly multi-line, SMTP reply."""

    code: int
    lines: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def dot_stuff(data: bytes) -> bytes:
    """Escape lines that begin with ``.`` for the DATA phase.

    Every line starting with a period gets one more, so ``.`` becomes
    ``..`` and ``..hello`` becomes ``...hello``; the receiver strips
    exactly one.
    """
    if data.startswith(b"."):
        data = b"." + data
    return data.replace(b"\r\n.", b"\r\n..")


def _crlf(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").replace("\n", "\r\n")


def _check_header_value(name: str, value: str) -> None:
    if "\r" in value or "\n" in value:
        raise ValueError(f"Header {name!r} must not contain line breaks")


def _header(name: str, value: str) -> str:
    _check_header_value(name, value)
    if not value.isascii():
        value = Header(value, "utf-8", header_name=name).encode(linesep="\r\n")
    return f"{name}: {value}"


def _address_header(name: str, addresses: List[str]) -> str:
    formatted = []
    for raw in addresses:
        parsed = EmailAddress.parse(raw)
        formatted.append(formataddr((parsed.name, parsed.address)))
    return f"{name}: {', '.join(formatted)}"


def _text_part(text: str, subtype: str) -> Tuple[List[str], bytes]:
    body = _crlf(text)
    long_lines = any(len(line) > MAX_LINE_OCTETS for line in body.split("\r\n"))
    if body.isascii() and not long_lines:
        encoding, payload = "7bit", body
    else:
        encoding, payload = "quoted-printable", qp_encode(body.encode("utf-8"))
    headers = [
        f'Content-Type: text/{subtype}; charset="utf-8"',
        f"Content-Transfer-Encoding: {encoding}",
    ]
    return headers, payload.encode("ascii")


def _filename_param(param: str, filename: str) -> str:
    _check_header_value("filename", filename)
    if filename.isascii():
        return f'{param}="{filename}"'
    return f"{param}*={encode_rfc2231(filename, 'utf-8')}"


def _attachment_part(attachment: Attachment) -> Tuple[List[str], bytes]:
    if len(attachment.content) > MAX_ATTACHMENT_SIZE:
        raise ValueError(
            f"Attachment {attachment.filename!r} exceeds {MAX_ATTACHMENT_SIZE} bytes"
        )
    disposition = "inline" if attachment.inline else "attachment"
    headers = [
        f"Content-Type: {attachment.content_type}; {_filename_param('name', attachment.filename)}",
        "Content-Transfer-Encoding: base64",
        f"Content-Disposition: {disposition}; {_filename_param('filename', attachment.filename)}",
    ]
    if attachment.inline and attachment.content_id:
        headers.append(f"Content-ID: <{attachment.content_id.strip('<>')}>")
    return headers, b64encode_lines(attachment.content).encode("ascii")


def build_message(
    msg: OutgoingMessage,
    message_id: Optional[str] = None,
    date: Optional[datetime] = None,
) -> bytes:
    """Assemble *msg* into RFC 5322 bytes with CRLF line endings.

    A single text, HTML or attachment part becomes the message body
    directly; more than one is wrapped in multipart/mixed. The result is
    not dot-stuffed.

    Raises:
        ValueError: On invalid addresses, header injection attempts or
            oversized attachments.
    """
    headers = [
        f"Date: {format_datetime(date or datetime.now(timezone.utc))}",
        _address_header("From", [msg.from_addr]),
        _address_header("To", msg.to),
    ]
    if msg.cc:
        headers.append(_address_header("Cc", msg.cc))
    if msg.subject:
        headers.append(_header("Subject", msg.subject))
    message_id = message_id or msg.headers.get("Message-ID") or make_msgid()
    headers.append(_header("Message-ID", message_id))
    headers.append("MIME-Version: 1.0")
    for name, value in msg.headers.items():
        if name.lower() not in ("message-id", "mime-version"):
            headers.append(_header(name, value))

    parts: List[Tuple[List[str], bytes]] = []
    if msg.text:
        parts.append(_text_part(msg.text, "plain"))
    if msg.html:
        parts.append(_text_part(msg.html, "html"))
    for attachment in msg.attachments:
        parts.append(_attachment_part(attachment))

    if not parts:
        parts.append(_text_part("", "plain"))

    if len(parts) == 1:
        part_headers, body = parts[0]
        head = "\r\n".join(headers + part_headers) + "\r\n\r\n"
        return head.encode("utf-8") + body

    boundary = f"mixed_{uuid.uuid4().hex}"
    headers.append(f'Content-Type: multipart/mixed; boundary="{boundary}"')
    pieces = ["\r\n".join(headers).encode("utf-8"), b"\r\n\r\n"]
    for part_headers, body in parts:
        pieces.append(f"--{boundary}\r\n".encode("ascii"))
        pieces.append(("\r\n".join(part_headers) + "\r\n\r\n").encode("utf-8"))
        pieces.append(body)
        pieces.append(b"\r\n")
    pieces.append(f"--{boundary}--\r\n".encode("ascii"))
    return b"".join(pieces)


class SmtpClient:
    """SMTP client for message submission.

    Args:
        transport: Byte transport, not yet connected.
        config: Connection settings, fixed for the life of the client.
    """

    def __init__(self, transport: Transport, config: SmtpConfig) -> None:
        self.transport = transport
        self.config = config
        self._tokens = BearerTokenSource(
            config.auth,
            refresh_skew=config.refresh_skew,
            auto_refresh=config.auto_refresh_token,
            retry_on_auth_failure=config.retry_on_auth_failure,
        )
        self._reader: Optional[LineReader] = None
        self._writer: Optional[WriteQueue] = None
        self.extensions: Dict[str, List[str]] = {}

    @property
    def auth_mechanisms(self) -> List[str]:
        return [m.upper() for m in self.extensions.get("AUTH", [])]

    def is_connected(self) -> bool:
        return self.transport.is_connected()

    async def _timed(self, awaitable: Awaitable[Any], label: str) -> Any:
        return await with_timeout(awaitable, self.config.command_timeout, label)

    async def _write(self, data: bytes, label: str) -> None:
        if self._writer is None:
            raise MailConnectionError("SMTP client is not connected")
        await self._timed(self._writer.write(data), label)

    async def _send_line(self, line: str, label: str, redacted: bool = False) -> None:
        logger.debug("C: %s", f"{label} ****" if redacted else line)
        await self._write(line.encode("utf-8") + b"\r\n", label)

    async def _read_reply(self, label: str) -> SmtpReply:
        """Read one reply; a line with ``-`` in the fourth column continues it."""
        if self._reader is None:
            raise MailConnectionError("SMTP client is not connected")
        reply: Optional[SmtpReply] = None
        while True:
            line = await self._timed(self._reader.read_line(), label)
            if line is None:
                raise MailConnectionError(f"Connection closed by server during {label}")
            logger.debug("S: %s", line)
            if len(line) < 3 or not line[:3].isdigit():
                raise CommandError(label, line)
            if reply is None:
                reply = SmtpReply(code=int(line[:3]))
            reply.lines.append(line)
            if line[3:4] != "-":
                return reply

    async def _expect(self, label: str, *codes: int) -> SmtpReply:
        reply = await self._read_reply(label)
        if reply.code not in codes:
            raise CommandError(label, reply.text)
        return reply

    async def _command(self, line: str, label: str, *codes: int) -> SmtpReply:
        await self._send_line(line, label)
        return await self._expect(label, *codes)

    async def connect(self) -> None:
        """Connect, read the 220 greeting, EHLO, optionally STARTTLS, then AUTH.

        Raises:
            MailConnectionError: If the greeting is not 220.
            NegotiationError: If EHLO or STARTTLS fails.
            AuthenticationError: If the server rejects the credentials.
        """
        params = ConnectParams(
            host=self.config.host,
            port=self.config.port,
            secure=self.config.secure,
            starttls=self.config.starttls,
            protocol_hints=("smtp",),
        )
        logger.info("Connecting to SMTP server %s:%d", self.config.host, self.config.port)
        await self._timed(self.transport.connect(params), "connect")
        self._reader = LineReader(self.transport, self.config.max_line_length)
        self._writer = WriteQueue(self.transport)

        greeting = await self._read_reply("greeting")
        if greeting.code != 220:
            raise MailConnectionError(f"SMTP greeting failed: {greeting.text}")

        await self._ehlo()
        if self.config.starttls:
            await self._starttls()
            await self._ehlo()

        if self.config.auth is not None:
            await self._authenticate()
            logger.info("Authenticated as %s", self.config.auth.username)

    async def _ehlo(self) -> None:
        try:
            reply = await self._command(f"EHLO {self.config.ehlo_name}", "EHLO", 250)
        except CommandError as e:
            raise NegotiationError(f"EHLO failed: {e.response}") from e
        self.extensions = {}
        for line in reply.lines[1:]:
            words = line[4:].split()
            if words:
                self.extensions[words[0].upper()] = words[1:]

    async def _starttls(self) -> None:
        if "STARTTLS" not in self.extensions:
            raise NegotiationError("Server does not offer STARTTLS")
        try:
            await self._command("STARTTLS", "STARTTLS", 220)
        except CommandError as e:
            raise NegotiationError(f"STARTTLS refused: {e.response}") from e
        start_tls = getattr(self.transport, "start_tls", None)
        if start_tls is not None:
            await self._timed(start_tls(), "STARTTLS")
            self._reader = LineReader(self.transport, self.config.max_line_length)
        else:
            logger.debug("Transport has no start_tls(); assuming it upgrades itself")

    async def _auth_step(self, line: str, label: str, *codes: int) -> SmtpReply:
        await self._send_line(line, label, redacted=True)
        try:
            return await self._expect(label, *codes)
        except CommandError as e:
            raise AuthenticationError(label, e.response) from e

    async def _authenticate(self) -> None:
        method = self.config.auth
        if isinstance(method, PlainAuth):
            await self._auth_step(
                f"AUTH PLAIN {plain_payload(method.username, method.password)}",
                "AUTH PLAIN",
                235,
            )
        elif isinstance(method, LoginAuth):
            await self._auth_step("AUTH LOGIN", "AUTH LOGIN", 334)
            await self._auth_step(b64(method.username), "AUTH LOGIN", 334)
            await self._auth_step(b64(method.password), "AUTH LOGIN", 235)
        elif isinstance(method, XOAuth2Auth):
            username = method.username

            async def attempt() -> None:
                token = await self._tokens.token()
                reply = await self._auth_step(
                    f"AUTH XOAUTH2 {xoauth2_payload(username, token)}",
                    "AUTH XOAUTH2",
                    235,
                    334,
                )
                if reply.code == 334:
                    # error challenge: an empty line makes the server send its final reply
                    await self._auth_step("", "AUTH XOAUTH2", 235)

            await self._tokens.run_with_refresh(attempt)

    async def send_mail(self, msg: OutgoingMessage) -> str:
        """Submit *msg* to every to/cc/bcc recipient.

        Returns:
            The Message-ID placed in the message.

        Raises:
            ValueError: If the message has no recipients or an invalid address.
            CommandError: If the server rejects any step.
        """
        recipients = msg.recipients
        if not recipients:
            raise ValueError("Message has no recipients")
        sender = EmailAddress.parse(msg.from_addr)
        rcpt = [EmailAddress.parse(r).address for r in recipients]

        domain = sender.address.rpartition("@")[2] or None
        message_id = msg.headers.get("Message-ID") or make_msgid(domain=domain)
        data = build_message(msg, message_id=message_id)

        try:
            await self._command(f"MAIL FROM:<{sender.address}>", "MAIL FROM", 250)
            for address in rcpt:
                await self._command(f"RCPT TO:<{address}>", "RCPT TO", 250, 251)
            await self._command("DATA", "DATA", 354)
        except CommandError:
            await self._reset()
            raise

        payload = dot_stuff(data)
        if not payload.endswith(b"\r\n"):
            payload += b"\r\n"
        await self._write(payload, "DATA")
        await self._send_line(".", "DATA")
        await self._expect("DATA", 250)
        logger.info("Sent message %s to %d recipient(s)", message_id, len(rcpt))
        return message_id

    async def _reset(self) -> None:
        try:
            await self._command("RSET", "RSET", 250)
        except MailError as e:
            logger.debug("RSET failed (ignored): %s", e)

    async def close(self) -> None:
        """Send QUIT (best effort) and close the transport. Safe in any state."""
        if self._writer is not None and self.transport.is_connected():
            try:
                await self._command("QUIT", "QUIT", 221)
            except MailError as e:
                logger.debug("QUIT failed (ignored): %s", e)
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        await self.transport.close()
