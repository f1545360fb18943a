"""Unit tests for the ducq TCP transport."""

import asyncio
import socket

import pytest

from ducq_client.transport import (
    MAX_FRAME_SIZE,
    Message,
    State,
    TcpConnection,
    TransportError,
)


# ============================================================================
# Helpers
# ============================================================================


class Collector:
    """Listen context that keeps every message."""

    def __init__(self, stop_after=None):
        self.messages = []
        self.stop_after = stop_after

    def on_message(self, message):
        self.messages.append(message)
        if self.stop_after and len(self.messages) >= self.stop_after:
            return State.PROTOCOL
        return State.OK


async def start_peer(handler):
    """Start a local server running `handler`; returns (server, port)."""
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, str(port)


async def read_frame(reader):
    """Read one frame body from the client."""
    header = await reader.readuntil(b"\n")
    return await reader.readexactly(int(header))


def unused_port():
    """Get a local port nothing listens on."""
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return str(s.getsockname()[1])


async def idle_peer(reader, writer):
    """Peer that waits for the client to hang up."""
    await reader.read()
    writer.close()


def replying_peer(*frames, received=None):
    """Peer that reads the request, sends `frames` raw, then closes."""
    async def handler(reader, writer):
        body = await read_frame(reader)
        if received is not None:
            received.append(body)
        for frame in frames:
            writer.write(frame)
        await writer.drain()
        writer.close()
    return handler


async def run_exchange(handler, context, timeout=None):
    """Connect to a peer running `handler`, send a request and listen."""
    server, port = await start_peer(handler)
    conn = TcpConnection("127.0.0.1", port)
    try:
        assert await conn.connect() == State.OK
        if timeout is not None:
            assert conn.set_timeout(timeout) == State.OK
        assert await conn.emit("subscribe", "/events") == State.OK
        return conn, await conn.listen(context)
    finally:
        await conn.close()
        server.close()


# ============================================================================
# State
# ============================================================================


class TestState:
    """Tests for the status taxonomy."""

    @pytest.mark.parametrize("state", [State.OK, State.CLOSE, State.PROTOCOL])
    def test_soft_states(self, state):
        """Normal and recoverable states are not hard errors."""
        assert state.is_hard_error is False

    @pytest.mark.parametrize("state", [
        State.ECONNECT, State.ETIMEOUT, State.EWRITE, State.EREAD,
        State.EMSGINV, State.EMSGSIZE, State.ENOCONN,
    ])
    def test_hard_states(self, state):
        """Transport failures are hard errors."""
        assert state.is_hard_error is True

    def test_every_state_described(self):
        """describe() has text for every state."""
        for state in State:
            assert state.describe()

    def test_describe_text(self):
        """describe() returns readable text."""
        assert State.ECONNECT.describe() == "could not connect"
        assert State.CLOSE.describe() == "connection closed by peer"


# ============================================================================
# Message
# ============================================================================


class TestMessage:
    """Tests for message framing."""

    def test_encode(self):
        """encode() produces a length-prefixed frame."""
        frame = Message("list_commands", "*").encode()
        assert frame == b"16\nlist_commands *\n"

    def test_encode_with_payload(self):
        """The payload follows the header line."""
        frame = Message("publish", "/a", b"hello").encode()
        assert frame == b"16\npublish /a\nhello"

    def test_decode(self):
        """decode() splits header and payload."""
        message = Message.decode(b"publish /a/b\nline1\nline2")

        assert message.command == "publish"
        assert message.route == "/a/b"
        assert message.payload == b"line1\nline2"

    def test_decode_missing_header(self):
        """A body without a newline is rejected."""
        with pytest.raises(ValueError):
            Message.decode(b"publish /a")

    def test_decode_missing_route(self):
        """A header without a route is rejected."""
        with pytest.raises(ValueError):
            Message.decode(b"publish\npayload")


# ============================================================================
# TcpConnection
# ============================================================================


class TestTcpConnectionSetup:
    """Tests for creating handles."""

    def test_valid_port(self):
        """A decimal port string is accepted."""
        conn = TcpConnection("localhost", "9090")
        assert conn.port == 9090
        assert conn.is_connected is False
        assert conn.is_released is False

    @pytest.mark.parametrize("port", ["abc", "", "0", "70000", "-1"])
    def test_invalid_port(self, port):
        """Ports that are not valid TCP ports are rejected."""
        with pytest.raises(TransportError):
            TcpConnection("localhost", port)


class TestTcpConnectionConnect:
    """Tests for connect/close/release."""

    @pytest.mark.asyncio
    async def test_connect_refused(self):
        """A refused connection reports ECONNECT with the OS error."""
        conn = TcpConnection("127.0.0.1", unused_port())

        state = await conn.connect()

        assert state == State.ECONNECT
        assert conn.last_error
        assert conn.is_connected is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("host", ["a..b", "a" * 64 + ".example"])
    async def test_connect_malformed_host(self, host):
        """A host name the resolver cannot encode reports ECONNECT."""
        conn = TcpConnection(host, "9")

        state = await conn.connect()

        assert state == State.ECONNECT
        assert conn.last_error
        assert conn.is_connected is False

    @pytest.mark.asyncio
    async def test_connect_and_close(self):
        """connect() opens a socket and close() shuts it."""
        server, port = await start_peer(idle_peer)
        conn = TcpConnection("127.0.0.1", port)

        assert await conn.connect() == State.OK
        assert conn.is_connected is True

        await conn.close()
        assert conn.is_connected is False
        server.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        """close() on a closed or never opened handle does nothing."""
        conn = TcpConnection("127.0.0.1", unused_port())

        await conn.close()
        await conn.close()

        assert conn.is_connected is False

    @pytest.mark.asyncio
    async def test_release_blocks_connect(self):
        """A released handle cannot connect again."""
        conn = TcpConnection("127.0.0.1", unused_port())
        conn.release()
        conn.release()

        assert conn.is_released is True
        assert await conn.connect() == State.ENOCONN

    @pytest.mark.asyncio
    async def test_operations_need_connection(self):
        """set_timeout/emit/listen report ENOCONN before connect()."""
        conn = TcpConnection("127.0.0.1", unused_port())

        assert conn.set_timeout(60) == State.ENOCONN
        assert await conn.emit("c", "r") == State.ENOCONN
        assert await conn.listen(Collector()) == State.ENOCONN

    @pytest.mark.asyncio
    async def test_set_timeout(self):
        """set_timeout() stores the timeout on a connected handle."""
        server, port = await start_peer(idle_peer)
        conn = TcpConnection("127.0.0.1", port)
        await conn.connect()

        assert conn.set_timeout(60) == State.OK
        assert conn.timeout == 60

        await conn.close()
        server.close()


class TestTcpConnectionExchange:
    """Tests for emit/listen against a local peer."""

    @pytest.mark.asyncio
    async def test_emit_sends_frame(self):
        """emit() sends command, route and payload in one frame."""
        received = []
        context = Collector()

        _, state = await run_exchange(replying_peer(received=received), context)

        assert received == [b"subscribe /events\n"]
        assert state == State.CLOSE

    @pytest.mark.asyncio
    async def test_listen_delivers_events(self):
        """listen() hands every event to the context until the peer closes."""
        context = Collector()
        handler = replying_peer(
            Message("publish", "/events", b"one").encode(),
            Message("publish", "/events", b"two").encode(),
        )

        _, state = await run_exchange(handler, context)

        assert state == State.CLOSE
        assert [m.payload for m in context.messages] == [b"one", b"two"]

    @pytest.mark.asyncio
    async def test_listen_stops_on_context_state(self):
        """A non-OK state from the context ends listen() with that state."""
        context = Collector(stop_after=1)
        handler = replying_peer(
            Message("publish", "/events", b"one").encode(),
            Message("publish", "/events", b"two").encode(),
        )

        _, state = await run_exchange(handler, context)

        assert state == State.PROTOCOL
        assert len(context.messages) == 1

    @pytest.mark.asyncio
    async def test_invalid_header(self):
        """A non-numeric frame header is EMSGINV."""
        conn, state = await run_exchange(replying_peer(b"abc\nbody"), Collector())

        assert state == State.EMSGINV
        assert "header" in conn.last_error

    @pytest.mark.asyncio
    async def test_truncated_body(self):
        """EOF inside a frame body is EREAD."""
        _, state = await run_exchange(replying_peer(b"100\nshort"), Collector())
        assert state == State.EREAD

    @pytest.mark.asyncio
    async def test_truncated_header(self):
        """EOF inside a frame header is EREAD."""
        _, state = await run_exchange(replying_peer(b"12"), Collector())
        assert state == State.EREAD

    @pytest.mark.asyncio
    async def test_oversized_frame(self):
        """A frame larger than MAX_FRAME_SIZE is EMSGSIZE."""
        frame = f"{MAX_FRAME_SIZE + 1}\n".encode()
        _, state = await run_exchange(replying_peer(frame), Collector())
        assert state == State.EMSGSIZE

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        """An intact frame without a message header is PROTOCOL."""
        _, state = await run_exchange(replying_peer(b"5\nhello"), Collector())
        assert state == State.PROTOCOL

    @pytest.mark.asyncio
    async def test_idle_timeout(self):
        """No data within the timeout is ETIMEOUT."""
        done = asyncio.Event()

        async def silent(reader, writer):
            await read_frame(reader)
            await done.wait()
            writer.close()

        try:
            _, state = await run_exchange(silent, Collector(), timeout=0.05)
        finally:
            done.set()
            await asyncio.sleep(0)

        assert state == State.ETIMEOUT
