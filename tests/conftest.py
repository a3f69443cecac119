"""Shared fixtures: an in-memory scripted server speaking over the Transport contract."""

import re
from typing import Any, Callable, List, Optional, Union

import pytest

from mailwire.auth import AccessToken, PlainAuth
from mailwire.config import ImapConfig, SmtpConfig
from mailwire.errors import MailConnectionError
from mailwire.transport import ConnectParams, PendingReadQueue

Reply = Union[str, bytes, Callable[[str, str], Union[str, bytes, None]]]

_TAG = re.compile(r"A\d{4,}$")


class Rule:
    def __init__(self, pattern: str, replies: List[Reply], once: bool) -> None:
        self.pattern = re.compile(pattern, re.IGNORECASE)
        self.replies = replies
        self.once = once
        self.hits = 0


class ScriptedServer:
    """Fake server that answers each client line according to registered rules.

    A rule matches the command text after the tag (the whole line when the
    line carries no ``A0001``-style tag). String replies are formatted with
    ``{tag}`` and terminated with CRLF; bytes replies are sent verbatim.
    """

    def __init__(
        self,
        greeting: Optional[bytes] = b"* OK IMAP4rev1 Service Ready\r\n",
        chunk_size: Optional[int] = None,
    ) -> None:
        self.greeting = greeting
        self.chunk_size = chunk_size
        self.queue = PendingReadQueue()
        self.connected = False
        self.connect_params: Optional[ConnectParams] = None
        self.tls_started = False
        self.written = bytearray()
        self.lines: List[str] = []
        self.rules: List[Rule] = []
        self.last_tag = ""
        self._pending = bytearray()
        self._absorb = 0

    def on(self, pattern: str, *replies: Reply, once: bool = False) -> "ScriptedServer":
        self.rules.append(Rule(pattern, list(replies), once))
        return self

    def expect_literal(self, size: int) -> None:
        """Swallow the next *size* bytes without treating them as lines."""
        self._absorb = size

    def push(self, data: bytes) -> None:
        if self.chunk_size:
            for i in range(0, len(data), self.chunk_size):
                self.queue.feed(data[i : i + self.chunk_size])
        else:
            self.queue.feed(data)

    # Transport contract

    async def connect(self, params: ConnectParams) -> None:
        self.connect_params = params
        self.connected = True
        if self.greeting:
            self.push(self.greeting)

    async def start_tls(self) -> None:
        self.tls_started = True

    async def write(self, data: bytes) -> None:
        if not self.connected:
            raise MailConnectionError("not connected")
        self.written.extend(data)
        self._pending.extend(data)
        while self._pending:
            if self._absorb:
                take = min(self._absorb, len(self._pending))
                del self._pending[:take]
                self._absorb -= take
                continue
            idx = self._pending.find(b"\r\n")
            if idx < 0:
                break
            line = bytes(self._pending[:idx]).decode("utf-8")
            del self._pending[: idx + 2]
            self.lines.append(line)
            self._handle(line)

    async def read(self) -> Optional[bytes]:
        return await self.queue.read()

    async def close(self) -> None:
        self.connected = False
        self.queue.close()

    def is_connected(self) -> bool:
        return self.connected

    def _handle(self, line: str) -> None:
        head, _, rest = line.partition(" ")
        if _TAG.match(head):
            tag, command = head, rest
            self.last_tag = tag
        else:
            tag, command = self.last_tag, line
        for rule in self.rules:
            if rule.once and rule.hits:
                continue
            if rule.pattern.match(command):
                rule.hits += 1
                for reply in rule.replies:
                    self._send(reply, tag, line)
                return

    def _send(self, reply: Any, tag: str, line: str) -> None:
        if callable(reply):
            reply = reply(tag, line)
            if reply is None:
                return
        if isinstance(reply, str):
            text = reply.format(tag=tag)
            if not text.endswith("\r\n"):
                text += "\r\n"
            reply = text.encode("utf-8")
        self.push(reply)

    def commands(self) -> List[str]:
        """Client lines with their tags stripped."""
        result = []
        for line in self.lines:
            head, _, rest = line.partition(" ")
            result.append(rest if _TAG.match(head) else line)
        return result


class FakeTokenProvider:
    """Token provider that hands out ``token-N`` and counts refreshes."""

    def __init__(self, expires_at: Optional[float] = None) -> None:
        self.refresh_calls = 0
        self.current = AccessToken("token-0", expires_at)

    async def get_access_token(self) -> AccessToken:
        return self.current

    async def refresh_access_token(self) -> AccessToken:
        self.refresh_calls += 1
        self.current = AccessToken(f"token-{self.refresh_calls}")
        return self.current


def add_imap_basics(
    server: ScriptedServer,
    caps: str = "IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2 IDLE UIDPLUS LITERAL+",
) -> ScriptedServer:
    server.on(r"CAPABILITY", f"* CAPABILITY {caps}", "{tag} OK CAPABILITY completed")
    server.on(r"AUTHENTICATE PLAIN ", "{tag} OK Logged in")
    server.on(r"LOGOUT", "* BYE Logging out", "{tag} OK LOGOUT completed")
    server.on(
        r"SELECT ",
        "* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
        "* 10 EXISTS",
        "* 0 RECENT",
        "* OK [UNSEEN 2] Message 2 is first unseen",
        "* OK [UIDVALIDITY 3857529045] UIDs valid",
        "{tag} OK [READ-WRITE] SELECT completed",
    )
    return server


@pytest.fixture
def imap_server() -> ScriptedServer:
    """Scripted IMAP server with CAPABILITY, PLAIN login, SELECT and LOGOUT."""
    return add_imap_basics(ScriptedServer())


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.example.com",
        port=993,
        auth=PlainAuth(username="user@example.com", password="secret"),
        command_timeout=1.0,
    )


@pytest.fixture
def smtp_server() -> ScriptedServer:
    """Scripted SMTP server accepting EHLO, PLAIN auth and one message."""
    server = ScriptedServer(greeting=b"220 smtp.example.com ESMTP ready\r\n")
    server.on(
        r"EHLO ",
        "250-smtp.example.com greets you",
        "250-PIPELINING",
        "250-AUTH PLAIN LOGIN XOAUTH2",
        "250-STARTTLS",
        "250 8BITMIME",
    )
    server.on(r"AUTH PLAIN ", "235 2.7.0 Authentication successful")
    server.on(r"MAIL FROM:", "250 2.1.0 OK")
    server.on(r"RCPT TO:", "250 2.1.5 OK")
    server.on(r"DATA$", "354 End data with <CR><LF>.<CR><LF>")
    server.on(r"\.$", "250 2.0.0 OK queued")
    server.on(r"QUIT$", "221 2.0.0 Bye")
    return server


@pytest.fixture
def smtp_config() -> SmtpConfig:
    return SmtpConfig(
        host="smtp.example.com",
        port=587,
        auth=PlainAuth(username="user@example.com", password="secret"),
        secure=False,
        command_timeout=1.0,
    )
