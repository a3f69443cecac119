"""Tests for the transport framing helpers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailwire.errors import CommandTimeoutError, MailConnectionError
from mailwire.transport import (
    ConnectParams,
    LineReader,
    PendingReadQueue,
    StreamTransport,
    WriteQueue,
    with_timeout,
)


class QueueTransport:
    def __init__(self, *chunks: bytes, close: bool = True) -> None:
        self.queue = PendingReadQueue()
        for chunk in chunks:
            self.queue.feed(chunk)
        if close:
            self.queue.close()

    async def read(self):
        return await self.queue.read()


class TestPendingReadQueue:
    @pytest.mark.asyncio
    async def test_buffered_chunks_served_in_order(self):
        queue = PendingReadQueue()
        queue.feed(b"one")
        queue.feed(b"two")
        assert await queue.read() == b"one"
        assert await queue.read() == b"two"

    @pytest.mark.asyncio
    async def test_waiting_readers_served_fifo(self):
        queue = PendingReadQueue()
        first = asyncio.ensure_future(queue.read())
        second = asyncio.ensure_future(queue.read())
        await asyncio.sleep(0)
        queue.feed(b"a")
        queue.feed(b"b")
        assert await first == b"a"
        assert await second == b"b"

    @pytest.mark.asyncio
    async def test_close_wakes_readers_with_none(self):
        queue = PendingReadQueue()
        waiter = asyncio.ensure_future(queue.read())
        await asyncio.sleep(0)
        queue.close()
        assert await waiter is None
        assert await queue.read() is None
        assert queue.closed

    @pytest.mark.asyncio
    async def test_cancelled_reader_does_not_swallow_data(self):
        """Test that a chunk fed after a cancelled read reaches the next reader."""
        queue = PendingReadQueue()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.read(), 0.01)
        queue.feed(b"late")
        assert await queue.read() == b"late"


class TestLineReader:
    @pytest.mark.asyncio
    async def test_crlf_split_across_chunks(self):
        reader = LineReader(QueueTransport(b"first\r", b"\nsec", b"ond\r\n"))
        assert await reader.read_line() == "first"
        assert await reader.read_line() == "second"
        assert await reader.read_line() is None
        assert reader.at_eof

    @pytest.mark.asyncio
    async def test_partial_line_at_eof(self):
        reader = LineReader(QueueTransport(b"done\r\ntrailing"))
        assert await reader.read_line() == "done"
        assert await reader.read_line() == "trailing"
        assert await reader.read_line() is None

    @pytest.mark.asyncio
    async def test_read_exact_then_lines(self):
        """Test switching between literal mode and line mode."""
        reader = LineReader(QueueTransport(b"{5}\r\nab", b"cdeXY\r\nnext\r\n"))
        assert await reader.read_line() == "{5}"
        assert await reader.read_exact(5) == b"abcde"
        assert await reader.read_line() == "XY"
        assert await reader.read_line() == "next"

    @pytest.mark.asyncio
    async def test_read_exact_keep_bounds_memory(self):
        reader = LineReader(QueueTransport(b"0123", b"4567", b"89\r\n"))
        assert await reader.read_exact(10, keep=3) == b"012"
        assert await reader.read_line() == ""

    @pytest.mark.asyncio
    async def test_read_exact_short_stream(self):
        reader = LineReader(QueueTransport(b"abc"))
        with pytest.raises(MailConnectionError):
            await reader.read_exact(5)

    @pytest.mark.asyncio
    async def test_max_line_length(self):
        reader = LineReader(QueueTransport(b"x" * 50, close=False), max_line_length=20)
        with pytest.raises(MailConnectionError, match="without CRLF"):
            await reader.read_line()


class TestWriteQueue:
    @pytest.mark.asyncio
    async def test_writes_are_serialized(self):
        """Test that concurrent writes reach the transport one at a time in order."""
        written = []
        in_flight = 0
        peak = 0

        async def write(data):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            written.append(data)
            in_flight -= 1

        transport = MagicMock()
        transport.write = write
        queue = WriteQueue(transport)

        await asyncio.gather(queue.write(b"1"), queue.write(b"2"), queue.write(b"3"))

        assert written == [b"1", b"2", b"3"]
        assert peak == 1

    @pytest.mark.asyncio
    async def test_failure_fails_pending_writes(self):
        transport = MagicMock()
        transport.write = AsyncMock(side_effect=OSError("broken pipe"))
        queue = WriteQueue(transport)

        results = await asyncio.gather(
            queue.write(b"a"), queue.write(b"b"), return_exceptions=True
        )

        assert isinstance(results[0], OSError)
        assert isinstance(results[1], MailConnectionError)

    @pytest.mark.asyncio
    async def test_close_stops_in_flight_drain(self):
        """Test that close() cancels the drain task and fails the blocked write."""
        started = asyncio.Event()

        async def write(data):
            started.set()
            await asyncio.sleep(10)

        transport = MagicMock()
        transport.write = write
        queue = WriteQueue(transport)

        first = asyncio.ensure_future(queue.write(b"a"))
        second = asyncio.ensure_future(queue.write(b"b"))
        await started.wait()
        drain = queue._drain_task
        assert drain is not None and not drain.done()

        queue.close()

        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, MailConnectionError) for r in results)
        await asyncio.sleep(0)
        assert drain.cancelled()
        assert queue._drain_task is None

    @pytest.mark.asyncio
    async def test_closed_queue_rejects_writes(self):
        queue = WriteQueue(MagicMock())
        queue.close()
        with pytest.raises(MailConnectionError):
            await queue.write(b"x")


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_raises_command_timeout(self):
        with pytest.raises(CommandTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(1), 0.01, "NOOP")
        assert exc_info.value.label == "NOOP"

    @pytest.mark.asyncio
    async def test_no_timeout(self):
        assert await with_timeout(asyncio.sleep(0, result="ok"), None, "NOOP") == "ok"


class TestStreamTransport:
    @pytest.mark.asyncio
    async def test_connect_failure_is_connection_error(self):
        transport = StreamTransport(connect_timeout=1.0)
        with pytest.raises(MailConnectionError, match="127.0.0.1:1"):
            await transport.connect(ConnectParams(host="127.0.0.1", port=1, secure=False))
        assert not transport.is_connected()

    @pytest.mark.asyncio
    async def test_round_trip_over_loopback(self):
        """Test plain TCP read and write against a local asyncio server."""

        async def handle(reader, writer):
            writer.write(b"* OK hello\r\n")
            line = await reader.readline()
            writer.write(b"echo " + line)
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        transport = StreamTransport()
        try:
            await transport.connect(ConnectParams(host="127.0.0.1", port=port, secure=False))
            assert transport.is_connected()
            reader = LineReader(transport)
            assert await reader.read_line() == "* OK hello"
            await transport.write(b"ping\r\n")
            assert await reader.read_line() == "echo ping"
            assert await reader.read_line() is None
        finally:
            await transport.close()
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_start_tls_requires_connection(self):
        with pytest.raises(MailConnectionError):
            await StreamTransport().start_tls()

    @pytest.mark.asyncio
    async def test_write_when_closed(self):
        with pytest.raises(MailConnectionError):
            await StreamTransport().write(b"x")
