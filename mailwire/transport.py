"""Byte transport contract and the framing helpers built on top of it.

The protocol clients never touch sockets directly. They talk to an object
implementing :class:`Transport` and layer two helpers over it:

* :class:`LineReader` turns the chunked byte stream into CRLF-delimited
  lines, and can switch to exact byte-count reads for IMAP literals.
* :class:`WriteQueue` serializes writes so a message in transit is never
  interleaved with another one.

:class:`StreamTransport` is an asyncio implementation for plain TCP, implicit
TLS and STARTTLS connections.
"""

import asyncio
import logging
import ssl
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Deque, Optional, Protocol, Tuple, runtime_checkable

from mailwire.config import create_ssl_context
from mailwire.errors import CommandTimeoutError, MailConnectionError

logger = logging.getLogger(__name__)

CRLF = b"\r\n"


async def with_timeout(awaitable: Awaitable[Any], timeout: Optional[float], label: str) -> Any:
    """Await *awaitable*, raising CommandTimeoutError after *timeout* seconds.

    A falsy *timeout* waits indefinitely.
    """
    if not timeout:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise CommandTimeoutError(label, timeout) from e


@dataclass(frozen=True)
class ConnectParams:
    """Where and how a transport should connect."""

    host: str
    port: int
    secure: bool = True
    starttls: bool = False
    protocol_hints: Tuple[str, ...] = ()


@runtime_checkable
class Transport(Protocol):
    """Bidirectional byte stream used by the protocol clients.

    ``read()`` returns the next chunk, or None once the stream has ended.
    Implementations serve at most one outstanding read at a time.
    """

    async def connect(self, params: ConnectParams) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def read(self) -> Optional[bytes]: ...

    async def close(self) -> None: ...

    def is_connected(self) -> bool: ...


class PendingReadQueue:
    """FIFO hand-off between a chunk producer and waiting readers.

    Chunks that arrive while nobody is reading are buffered; readers that
    arrive while no chunk is buffered wait in order. Closing the queue wakes
    every waiting reader with None (end of stream).
    """

    def __init__(self) -> None:
        self._chunks: Deque[bytes] = deque()
        self._waiters: "Deque[asyncio.Future[Optional[bytes]]]" = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes) -> None:
        if self._closed or not chunk:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(chunk)
                return
        self._chunks.append(chunk)

    def close(self) -> None:
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    async def read(self) -> Optional[bytes]:
        if self._chunks:
            return self._chunks.popleft()
        if self._closed:
            return None

        waiter: "asyncio.Future[Optional[bytes]]" = (
            asyncio.get_running_loop().create_future()
        )
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Delivered just before the cancellation landed: keep it.
                chunk = waiter.result()
                if chunk is not None:
                    self._chunks.appendleft(chunk)
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise


class LineReader:
    """Reads CRLF-terminated lines and exact-length payloads from a transport.

    The reader owns a private buffer. Bytes left over after a line stay in
    that buffer and are served first by the next :meth:`read_line` or
    :meth:`read_exact` call, so switching between line mode and literal mode
    never loses or duplicates data.
    """

    def __init__(self, transport: Transport, max_line_length: Optional[int] = None) -> None:
        self._transport = transport
        self._buffer = bytearray()
        self._scan_from = 0
        self._eof = False
        self.max_line_length = max_line_length

    @property
    def at_eof(self) -> bool:
        """True once the transport ended and the buffer is drained."""
        return self._eof and not self._buffer

    async def read_line(self) -> Optional[str]:
        """Return the next line without its CRLF, or None at end of stream.

        A trailing partial line at end of stream is returned once before
        None is reported.
        """
        while True:
            idx = self._buffer.find(CRLF, self._scan_from)
            if idx >= 0:
                line = bytes(self._buffer[:idx])
                del self._buffer[: idx + 2]
                self._scan_from = 0
                return line.decode("utf-8", errors="replace")

            if self.max_line_length is not None and len(self._buffer) > self.max_line_length:
                raise MailConnectionError(
                    f"Line exceeds {self.max_line_length} bytes without CRLF"
                )

            if self._eof:
                chunk = None
            else:
                chunk = await self._transport.read()
            if chunk is None:
                self._eof = True
                if not self._buffer:
                    return None
                line = bytes(self._buffer)
                self._buffer.clear()
                self._scan_from = 0
                return line.decode("utf-8", errors="replace")

            # A CR at the very end may pair with an LF in the next chunk.
            self._scan_from = max(0, len(self._buffer) - 1)
            self._buffer.extend(chunk)

    async def read_exact(self, size: int, keep: Optional[int] = None) -> bytes:
        """Consume exactly *size* bytes from the stream.

        When *keep* is given, only the first *keep* bytes are returned and
        the remainder is read and discarded chunk by chunk, so memory stays
        bounded by *keep* regardless of *size*.

        Raises:
            MailConnectionError: If the stream ends before *size* bytes.
        """
        if size < 0:
            raise ValueError("size must not be negative")
        limit = size if keep is None else min(keep, size)
        kept = bytearray()
        remaining = size

        while remaining > 0:
            if not self._buffer:
                chunk = None if self._eof else await self._transport.read()
                if chunk is None:
                    self._eof = True
                    raise MailConnectionError(
                        f"Connection closed after {size - remaining} of {size} literal bytes"
                    )
                self._buffer.extend(chunk)

            take = min(remaining, len(self._buffer))
            room = limit - len(kept)
            if room > 0:
                kept.extend(self._buffer[: min(take, room)])
            del self._buffer[:take]
            remaining -= take

        self._scan_from = 0
        return bytes(kept)


class WriteQueue:
    """Ships writes to the transport strictly in FIFO order.

    Exactly one transport write is in flight at any time; concurrent callers
    queue behind it and each call returns once its own bytes were written.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._pending: "Deque[Tuple[bytes, asyncio.Future[None]]]" = deque()
        self._drain_task: "Optional[asyncio.Task[None]]" = None
        self._closed = False

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise MailConnectionError("Write queue is closed")
        waiter: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._pending.append((data, waiter))
        if self._drain_task is None:
            self._drain_task = asyncio.ensure_future(self._drain())
        await waiter

    async def _drain(self) -> None:
        waiter: "Optional[asyncio.Future[None]]" = None
        try:
            while self._pending:
                data, waiter = self._pending.popleft()
                if waiter.cancelled():
                    continue
                try:
                    await self._transport.write(data)
                except Exception as e:
                    if not waiter.done():
                        waiter.set_exception(e)
                    self._fail_pending(MailConnectionError(f"Transport write failed: {e}"))
                    return
                if not waiter.done():
                    waiter.set_result(None)
        except asyncio.CancelledError:
            if waiter is not None and not waiter.done():
                waiter.set_exception(MailConnectionError("Write queue is closed"))
            raise
        finally:
            self._drain_task = None

    def _fail_pending(self, error: Exception) -> None:
        while self._pending:
            _, waiter = self._pending.popleft()
            if not waiter.done():
                waiter.set_exception(error)

    def close(self) -> None:
        self._closed = True
        if self._drain_task is not None:
            self._drain_task.cancel()
        self._fail_pending(MailConnectionError("Write queue is closed"))


class StreamTransport(asyncio.Protocol):
    """asyncio TCP transport with implicit TLS and STARTTLS support.

    Incoming data is pushed into a :class:`PendingReadQueue`; losing the
    connection closes the queue, which wakes every pending reader with end
    of stream.
    """

    def __init__(
        self,
        ssl_context: Optional[ssl.SSLContext] = None,
        connect_timeout: float = 30.0,
    ) -> None:
        self._ssl_context = ssl_context
        self._connect_timeout = connect_timeout
        self._transport: Optional[asyncio.Transport] = None
        self._reads = PendingReadQueue()
        self._can_write = asyncio.Event()
        self._can_write.set()
        self._host: Optional[str] = None

    def _context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = create_ssl_context()
        return self._ssl_context

    async def connect(self, params: ConnectParams) -> None:
        loop = asyncio.get_running_loop()
        implicit_tls = params.secure and not params.starttls
        ssl_context = self._context() if implicit_tls else None
        self._host = params.host

        logger.debug(
            "Connecting to %s:%d (tls=%s, starttls=%s, hints=%s)",
            params.host,
            params.port,
            implicit_tls,
            params.starttls,
            ",".join(params.protocol_hints) or "-",
        )
        try:
            await asyncio.wait_for(
                loop.create_connection(
                    lambda: self,
                    params.host,
                    params.port,
                    ssl=ssl_context,
                    server_hostname=params.host if ssl_context else None,
                ),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise MailConnectionError(
                f"Failed to connect to {params.host}:{params.port}: {e}"
            ) from e

    async def start_tls(self) -> None:
        """Upgrade the established connection to TLS in place."""
        if self._transport is None:
            raise MailConnectionError("Cannot start TLS: not connected")
        loop = asyncio.get_running_loop()
        self._transport = await loop.start_tls(
            self._transport, self, self._context(), server_hostname=self._host
        )

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def data_received(self, data: bytes) -> None:
        self._reads.feed(data)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            logger.debug("Connection lost: %s", exc)
        self._transport = None
        self._reads.close()
        self._can_write.set()

    def pause_writing(self) -> None:
        self._can_write.clear()

    def resume_writing(self) -> None:
        self._can_write.set()

    async def write(self, data: bytes) -> None:
        if self._transport is None or self._transport.is_closing():
            raise MailConnectionError("Transport is not connected")
        self._transport.write(data)
        await self._can_write.wait()

    async def read(self) -> Optional[bytes]:
        return await self._reads.read()

    async def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._reads.close()

    def is_connected(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()
