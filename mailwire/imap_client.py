"""IMAP client over an abstract byte transport."""

import asyncio
import inspect
import logging
import re
import time
from email.utils import parsedate_to_datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

from mailwire import utf7
from mailwire.auth import (
    BearerTokenSource,
    LoginAuth,
    PlainAuth,
    XOAuth2Auth,
    mechanism_name,
    plain_payload,
    xoauth2_payload,
)
from mailwire.config import ImapConfig
from mailwire.errors import (
    AuthenticationError,
    CommandError,
    CommandTimeoutError,
    MailConnectionError,
    MailError,
    NegotiationError,
    NoMailboxSelectedError,
)
from mailwire.imap_parser import (
    Segment,
    compact_uids,
    fetch_items,
    find_section,
    flatten,
    format_internal_date,
    item_bytes,
    parse_capabilities,
    parse_list,
    parse_search,
    quote,
    read_response,
    response_code,
    tagged_status,
    tokenize,
    untagged_number,
)
from mailwire.mime import (
    content_filename,
    header_text,
    parse_address_list,
    parse_headers,
    preview_text,
)
from mailwire.models import (
    AppendOptions,
    BodyResult,
    Capabilities,
    Envelope,
    FetchBodySpec,
    IdleEvent,
    MailboxInfo,
    MailboxSelection,
    StoreMode,
)
from mailwire.transport import (
    ConnectParams,
    LineReader,
    Transport,
    WriteQueue,
    with_timeout,
)

logger = logging.getLogger(__name__)

ENVELOPE_HEADER_FIELDS = (
    "DATE SUBJECT FROM TO CC BCC IN-REPLY-TO MESSAGE-ID "
    "CONTENT-TYPE CONTENT-TRANSFER-ENCODING"
)
DEFAULT_MAX_LITERAL_RETAIN = 64 * 1024
DEFAULT_IDLE_DURATION = 300.0

_NUMERIC_PART = re.compile(r"\d+(\.\d+)*")

UntaggedHandler = Callable[[List[Segment]], None]
IdleCallback = Callable[[IdleEvent], Union[None, Awaitable[None]]]


class ImapClient:
    """IMAP client driving one connection with sequential tagged commands.

    Every command gets a fresh tag (``A0001``, ``A0002``, ...) and the
    client reads until the line carrying that tag, handing untagged data to
    the command in flight. Reads and writes are each bounded by
    ``config.command_timeout``.

    Args:
        transport: Byte transport, not yet connected.
        config: Connection settings, fixed for the life of the client.
        max_literal_retain: Literals in envelope fetches larger than this
            are consumed but not kept.
    """

    def __init__(
        self,
        transport: Transport,
        config: ImapConfig,
        max_literal_retain: int = DEFAULT_MAX_LITERAL_RETAIN,
    ) -> None:
        self.transport = transport
        self.config = config
        self.max_literal_retain = max_literal_retain
        self._tokens = BearerTokenSource(
            config.auth,
            refresh_skew=config.refresh_skew,
            auto_refresh=config.auto_refresh_token,
            retry_on_auth_failure=config.retry_on_auth_failure,
        )
        self._reader: Optional[LineReader] = None
        self._writer: Optional[WriteQueue] = None
        self._tag_counter = 0
        self._capabilities: Optional[Capabilities] = None
        self._selected: Optional[MailboxSelection] = None
        self._closed = False

    @property
    def capabilities(self) -> Optional[Capabilities]:
        return self._capabilities

    @property
    def selected_mailbox(self) -> Optional[MailboxSelection]:
        return self._selected

    def is_connected(self) -> bool:
        return self.transport.is_connected()

    # -- plumbing ---------------------------------------------------------

    def _next_tag(self) -> str:
        self._tag_counter += 1
        return f"A{self._tag_counter:04d}"

    async def _timed(self, awaitable: Awaitable[Any], label: str) -> Any:
        return await with_timeout(awaitable, self.config.command_timeout, label)

    def _require_connection(self) -> Tuple[LineReader, WriteQueue]:
        if self._reader is None or self._writer is None or self._closed:
            raise MailConnectionError("IMAP client is not connected")
        return self._reader, self._writer

    def _require_selection(self) -> MailboxSelection:
        self._require_connection()
        if self._selected is None:
            raise NoMailboxSelectedError("No mailbox selected; call select_mailbox() first")
        return self._selected

    async def _write(self, data: bytes, label: str) -> None:
        _, writer = self._require_connection()
        await self._timed(writer.write(data), label)

    async def _send_line(self, line: str, label: str, redacted: bool = False) -> None:
        logger.debug("C: %s", f"{line.split(' ', 1)[0]} {label} ****" if redacted else line)
        await self._write(line.encode("utf-8") + b"\r\n", label)

    async def _read_line(self, label: str) -> str:
        reader, _ = self._require_connection()
        line = await self._timed(reader.read_line(), label)
        if line is None:
            raise MailConnectionError(f"Connection closed by server during {label}")
        logger.debug("S: %s", line)
        return line

    async def _await_tagged(
        self,
        tag: str,
        label: str,
        on_untagged: Optional[UntaggedHandler] = None,
        on_continuation: Optional[Callable[[str], Awaitable[None]]] = None,
        max_literal: Optional[int] = None,
    ) -> str:
        """Read responses until the tagged completion for *tag*.

        Returns:
            The tagged completion line.

        Raises:
            CommandError: If the completion status is not OK.
        """
        reader, _ = self._require_connection()
        while True:
            line = await self._read_line(label)
            if line.startswith(tag + " "):
                status, _ = tagged_status(line, tag)
                if status != "OK":
                    raise CommandError(label, line)
                return line
            if line.startswith("*"):
                segments = await self._timed(
                    read_response(reader, line, max_literal), label
                )
                if on_untagged is not None:
                    on_untagged(segments)
            elif line.startswith("+"):
                if on_continuation is None:
                    raise CommandError(label, f"unexpected continuation: {line}")
                await on_continuation(line)
            else:
                logger.debug("Ignoring unexpected line during %s: %s", label, line)

    async def _command(
        self,
        command: str,
        label: Optional[str] = None,
        on_untagged: Optional[UntaggedHandler] = None,
        max_literal: Optional[int] = None,
    ) -> str:
        self._require_connection()
        label = label or command.split(" ", 1)[0]
        tag = self._next_tag()
        await self._send_line(f"{tag} {command}", label)
        return await self._await_tagged(tag, label, on_untagged, max_literal=max_literal)

    # -- connection -------------------------------------------------------

    async def connect(self) -> None:
        """Connect, read the greeting, negotiate capabilities and authenticate.

        Raises:
            MailConnectionError: If the greeting is not affirmative.
            NegotiationError: If STARTTLS or CAPABILITY fails.
            AuthenticationError: If the server rejects the credentials.
        """
        self._tag_counter = 0
        self._capabilities = None
        self._selected = None
        self._closed = False

        params = ConnectParams(
            host=self.config.host,
            port=self.config.port,
            secure=self.config.secure,
            starttls=self.config.starttls,
            protocol_hints=("imap",),
        )
        logger.info("Connecting to IMAP server %s:%d", self.config.host, self.config.port)
        await self._timed(self.transport.connect(params), "connect")
        self._reader = LineReader(self.transport, self.config.max_line_length)
        self._writer = WriteQueue(self.transport)

        greeting = await self._read_line("greeting")
        upper = greeting.upper()
        if not (upper.startswith("* OK") or upper.startswith("* PREAUTH")):
            raise MailConnectionError(f"IMAP greeting failed: {greeting}")

        if self.config.starttls:
            await self._starttls()

        await self._load_capabilities()

        if upper.startswith("* PREAUTH"):
            logger.info("Connection is pre-authenticated")
        else:
            await self._authenticate()
            logger.info("Authenticated as %s", self.config.auth.username)

        if self.config.client_id:
            await self._send_id(self.config.client_id)

    async def _starttls(self) -> None:
        try:
            await self._command("STARTTLS")
        except CommandError as e:
            raise NegotiationError(f"STARTTLS refused: {e.response}") from e
        start_tls = getattr(self.transport, "start_tls", None)
        if start_tls is not None:
            await self._timed(start_tls(), "STARTTLS")
            # nothing read before the handshake may be trusted
            self._reader = LineReader(self.transport, self.config.max_line_length)
        else:
            logger.debug("Transport has no start_tls(); assuming it upgrades itself")

    async def _load_capabilities(self) -> None:
        tokens: List[str] = []

        def collect(segments: List[Segment]) -> None:
            first = segments[0]
            if isinstance(first, str) and first.upper().startswith("* CAPABILITY"):
                tokens.extend(parse_capabilities(first))

        try:
            await self._command("CAPABILITY", on_untagged=collect)
        except CommandError as e:
            raise NegotiationError(f"CAPABILITY failed: {e.response}") from e
        if not tokens:
            raise NegotiationError("Server sent no CAPABILITY data")
        self._capabilities = Capabilities.parse(tokens)
        logger.debug("Server capabilities: %s", " ".join(sorted(self._capabilities.raw)))

    async def _send_id(self, client_id: Dict[str, str]) -> None:
        fields = " ".join(f"{quote(k)} {quote(v)}" for k, v in client_id.items())
        try:
            await self._command(f"ID ({fields})")
        except (CommandError, CommandTimeoutError) as e:
            logger.warning("ID command failed (ignored): %s", e)

    async def _auth_command(
        self,
        command: str,
        label: str,
        on_continuation: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        tag = self._next_tag()
        await self._send_line(f"{tag} {command}", label, redacted=True)
        try:
            await self._await_tagged(tag, label, on_continuation=on_continuation)
        except CommandError as e:
            raise AuthenticationError(label, e.response) from e

    async def _authenticate(self) -> None:
        method = self.config.auth
        mechanism = mechanism_name(method)
        caps = self._capabilities
        if caps is not None and mechanism != "LOGIN" and mechanism not in caps.auth:
            logger.warning("Server does not advertise AUTH=%s, trying anyway", mechanism)

        if isinstance(method, PlainAuth):
            await self._auth_command(
                f"AUTHENTICATE PLAIN {plain_payload(method.username, method.password)}",
                "AUTHENTICATE PLAIN",
            )
        elif isinstance(method, LoginAuth):
            await self._auth_command(
                f"LOGIN {quote(method.username)} {quote(method.password)}", "LOGIN"
            )
        elif isinstance(method, XOAuth2Auth):
            username = method.username

            async def empty_reply(line: str) -> None:
                # servers put a base64 error document in the continuation
                await self._send_line("", "AUTHENTICATE XOAUTH2")

            async def attempt() -> None:
                token = await self._tokens.token()
                await self._auth_command(
                    f"AUTHENTICATE XOAUTH2 {xoauth2_payload(username, token)}",
                    "AUTHENTICATE XOAUTH2",
                    on_continuation=empty_reply,
                )

            await self._tokens.run_with_refresh(attempt)

    async def close(self) -> None:
        """Log out (best effort) and close the transport. Safe in any state."""
        if self._writer is not None and not self._closed and self.transport.is_connected():
            try:
                await self._command("LOGOUT")
            except MailError as e:
                logger.debug("LOGOUT failed (ignored): %s", e)
        self._closed = True
        self._selected = None
        if self._writer is not None:
            self._writer.close()
        await self.transport.close()

    # -- mailbox operations -----------------------------------------------

    async def list_mailboxes(self, reference: str = "", pattern: str = "*") -> List[MailboxInfo]:
        """List mailboxes; names are decoded from modified UTF-7."""
        boxes: List[MailboxInfo] = []

        def collect(segments: List[Segment]) -> None:
            info = parse_list(segments)
            if info is not None:
                boxes.append(info)

        await self._command(f"LIST {quote(reference)} {quote(pattern)}", on_untagged=collect)
        return boxes

    async def select_mailbox(self, name: str) -> MailboxSelection:
        """Select *name*, recording its EXISTS count and first unseen message.

        The selection state only changes when the server answers OK.
        """
        exists = 0
        unseen: Optional[int] = None

        def collect(segments: List[Segment]) -> None:
            nonlocal exists, unseen
            line = segments[0]
            if not isinstance(line, str):
                return
            count = untagged_number(line, "EXISTS")
            if count is not None:
                exists = count
                return
            code = response_code(line)
            if code and code[0] == "UNSEEN" and code[1] and code[1][0].isdigit():
                unseen = int(code[1][0])

        await self._command(f"SELECT {quote(utf7.encode(name))}", on_untagged=collect)
        self._selected = MailboxSelection(name=name, exists=exists, unseen=unseen)
        logger.debug("Selected %s: exists=%d unseen=%s", name, exists, unseen)
        return self._selected

    async def search(self, criteria: str = "ALL") -> List[int]:
        """Run UID SEARCH and return matching UIDs in ascending order.

        With a refreshable XOAUTH2 provider, an authentication failure
        triggers one token refresh and one retry.
        """
        self._require_selection()

        async def run() -> List[int]:
            uids: List[int] = []

            def collect(segments: List[Segment]) -> None:
                line = segments[0]
                if isinstance(line, str) and line.upper().startswith("* SEARCH"):
                    uids.extend(parse_search(line))

            await self._command(f"UID SEARCH {criteria}", "UID SEARCH", collect)
            return sorted(set(uids))

        return await self._tokens.run_with_refresh(run)

    async def fetch_envelopes_by_uid(
        self, uids: Iterable[int], max_preview_bytes: int = 512
    ) -> List[Envelope]:
        """Fetch flags, size, summary headers and a short preview per UID.

        Literals larger than ``max_literal_retain`` are consumed without
        being kept; the affected fields come back empty.
        """
        self._require_selection()
        uid_set = compact_uids(uids)
        if not uid_set:
            return []

        wants = f"UID FLAGS RFC822.SIZE BODYSTRUCTURE BODY.PEEK[HEADER.FIELDS ({ENVELOPE_HEADER_FIELDS})]"
        if max_preview_bytes > 0:
            wants += f" BODY.PEEK[TEXT]<0.{max_preview_bytes}>"

        envelopes: Dict[int, Envelope] = {}

        def collect(segments: List[Segment]) -> None:
            first = segments[0]
            if not (isinstance(first, str) and " FETCH " in first.upper()):
                return
            envelope = _parse_envelope(segments, max_preview_bytes)
            if envelope is not None:
                envelopes[envelope.uid] = envelope

        await self._command(
            f"UID FETCH {uid_set} ({wants})",
            "UID FETCH",
            collect,
            max_literal=self.max_literal_retain,
        )
        return [envelopes[uid] for uid in sorted(envelopes)]

    async def fetch_body(self, spec: FetchBodySpec) -> BodyResult:
        """Fetch a whole message or one MIME part, optionally byte-capped.

        The cap is sent as a server-side partial range so a large body is
        never transferred in full. ``truncated`` is set when the cap cut the
        content short.
        """
        self._require_selection()
        section = spec.part or ""
        cap = max(0, spec.max_bytes)
        # one byte past the cap tells whether the content goes on
        partial = f"<0.{cap + 1}>" if cap else ""
        if spec.part and _NUMERIC_PART.fullmatch(spec.part):
            meta = f"BODY.PEEK[{spec.part}.MIME]"
        else:
            meta = "BODY.PEEK[HEADER.FIELDS (CONTENT-TYPE CONTENT-DISPOSITION)] RFC822.SIZE"

        found: Dict[str, Any] = {}

        def collect(segments: List[Segment]) -> None:
            first = segments[0]
            if isinstance(first, str) and " FETCH " in first.upper():
                found.update(fetch_items(tokenize(segments)))

        await self._command(
            f"UID FETCH {spec.uid} (UID BODY.PEEK[{section}]{partial} {meta})",
            "UID FETCH",
            collect,
        )

        body_key = f"BODY[{section}]".upper()
        body_value = None
        for key, value in found.items():
            if key == body_key or key.startswith(body_key + "<"):
                body_value = value
                break
        data = item_bytes(body_value) or b""

        total = found.get("RFC822.SIZE")
        total_size = int(total) if isinstance(total, str) and total.isdigit() else None
        truncated = False
        if cap:
            truncated = len(data) > cap or (
                not spec.part and total_size is not None and total_size > cap
            )
            data = data[:cap]

        content_type = filename = None
        meta_raw = item_bytes(
            find_section(found, f"BODY[{spec.part}.MIME]")
            if spec.part and _NUMERIC_PART.fullmatch(spec.part)
            else find_section(found, "BODY[HEADER.FIELDS")
        )
        if meta_raw:
            headers = parse_headers(meta_raw)
            if headers.get("Content-Type") is not None:
                content_type = headers.get_content_type()
            filename = content_filename(headers)

        return BodyResult(
            uid=spec.uid,
            part=spec.part,
            data=data,
            truncated=truncated,
            content_type=content_type,
            filename=filename,
        )

    async def store_flags(
        self, uids: Iterable[int], mode: Union[StoreMode, str], flags: Iterable[str]
    ) -> None:
        """Add, remove or replace flags on the given UIDs."""
        self._require_selection()
        uid_set = compact_uids(uids)
        if not uid_set:
            return
        mode = StoreMode(mode)
        await self._command(
            f"UID STORE {uid_set} {mode.value} ({' '.join(flags)})", "UID STORE"
        )

    async def append(
        self, mailbox: str, data: bytes, opts: Optional[AppendOptions] = None
    ) -> Optional[int]:
        """Append a message to *mailbox*.

        Returns:
            The new message's UID when the server reports APPENDUID,
            otherwise None.
        """
        self._require_connection()
        opts = opts or AppendOptions()
        parts = ["APPEND", quote(utf7.encode(mailbox))]
        if opts.flags:
            parts.append("(" + " ".join(opts.flags) + ")")
        if opts.date is not None:
            parts.append(quote(format_internal_date(opts.date)))
        parts.append(f"{{{len(data)}}}")

        tag = self._next_tag()
        await self._send_line(f"{tag} {' '.join(parts)}", "APPEND")
        while True:
            line = await self._read_line("APPEND")
            if line.startswith("+"):
                break
            if line.startswith(tag + " "):
                raise CommandError("APPEND", line)

        await self._write(data, "APPEND")
        await self._write(b"\r\n", "APPEND")
        completion = await self._await_tagged(tag, "APPEND")

        code = response_code(completion)
        if code and code[0] == "APPENDUID" and len(code[1]) >= 2 and code[1][1].isdigit():
            return int(code[1][1])
        return None

    async def idle(
        self, on_event: IdleCallback, max_duration: float = DEFAULT_IDLE_DURATION
    ) -> None:
        """Wait for EXISTS/EXPUNGE pushes for up to *max_duration* seconds.

        *on_event* may be a plain function or a coroutine function. Returns
        early if the connection closes; does nothing when the server lacks
        the IDLE capability.
        """
        self._require_selection()
        if self._capabilities is None or not self._capabilities.idle:
            logger.warning("Server does not support IDLE")
            return
        reader, _ = self._require_connection()

        tag = self._next_tag()
        await self._send_line(f"{tag} IDLE", "IDLE")
        while True:
            line = await self._read_line("IDLE")
            if line.startswith("+"):
                break
            if line.startswith(tag + " "):
                raise CommandError("IDLE", line)

        async def dispatch(line: str) -> None:
            for kind in ("EXISTS", "EXPUNGE"):
                number = untagged_number(line, kind)
                if number is not None:
                    result = on_event(IdleEvent(kind.lower(), number))
                    if inspect.isawaitable(result):
                        await result
                    return

        deadline = time.monotonic() + max_duration
        while not self._closed:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                line = await asyncio.wait_for(reader.read_line(), remaining)
            except asyncio.TimeoutError:
                break
            if line is None:
                logger.info("Connection closed while idling")
                return
            logger.debug("S: %s", line)
            if line.startswith(tag + " "):
                return
            await dispatch(line)

        await self._send_line("DONE", "IDLE")
        while True:
            line = await self._read_line("IDLE")
            if line.startswith(tag + " "):
                break
            await dispatch(line)


def _parse_envelope(segments: List[Segment], max_preview_bytes: int) -> Optional[Envelope]:
    items = fetch_items(tokenize(segments))
    uid = items.get("UID")
    if not (isinstance(uid, str) and uid.isdigit()):
        return None

    raw_flags = items.get("FLAGS")
    flags = tuple(f for f in raw_flags if isinstance(f, str)) if isinstance(raw_flags, list) else ()
    size = items.get("RFC822.SIZE")

    headers = parse_headers(item_bytes(find_section(items, "BODY[HEADER")) or b"")

    date = None
    raw_date = headers.get("Date")
    if raw_date:
        try:
            date = parsedate_to_datetime(str(raw_date))
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header: %s", raw_date)

    preview = None
    text = item_bytes(find_section(items, "BODY[TEXT]"))
    if text is not None:
        preview = preview_text(headers, text)[:max_preview_bytes]

    has_attachments = _has_attachments(items.get("BODYSTRUCTURE"))

    return Envelope(
        uid=int(uid),
        flags=flags,
        size=int(size) if isinstance(size, str) and size.isdigit() else None,
        date=date,
        subject=header_text(headers, "Subject"),
        from_=tuple(parse_address_list(headers.get("From"))),
        to=tuple(parse_address_list(headers.get("To"))),
        cc=tuple(parse_address_list(headers.get("Cc"))),
        bcc=tuple(parse_address_list(headers.get("Bcc"))),
        in_reply_to=header_text(headers, "In-Reply-To"),
        message_id=header_text(headers, "Message-ID"),
        preview=preview,
        has_attachments=has_attachments,
    )


def _has_attachments(structure: Any) -> bool:
    """Guess attachment presence from BODYSTRUCTURE without walking the MIME tree.

    True for an ``attachment`` disposition, any ``application/*`` part, or a
    top-level multipart/mixed.
    """
    if not isinstance(structure, list):
        return False
    words = {word.lower() for word in flatten(structure)}
    if "attachment" in words or "application" in words:
        return True
    if structure and isinstance(structure[0], list):
        subtype = next((t for t in structure if isinstance(t, str)), "")
        return subtype.lower() == "mixed"
    return False
