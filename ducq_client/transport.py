"""
ducq TCP transport

Connection handle used by the orchestrator: connect, send one framed
request, then read framed events until the peer closes the exchange.

Wire format: every message is a frame

    <decimal body length>\\n<body>

whose body is `<command> <route>\\n<payload>`.

Failures are reported as State values, never raised. The OS error text of
the last failure is kept on the handle as `last_error`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

# Largest frame body accepted from the peer
MAX_FRAME_SIZE = 16 * 1024 * 1024

# Longest frame header line ("<length>\n")
MAX_HEADER_SIZE = 32


class State(IntEnum):
    """Status reported by every transport operation."""
    OK = 0
    CLOSE = 1
    PROTOCOL = 2
    ECONNECT = 10
    ETIMEOUT = 11
    EWRITE = 12
    EREAD = 13
    EMSGINV = 14
    EMSGSIZE = 15
    ENOCONN = 16

    @property
    def is_hard_error(self) -> bool:
        """True if this status warrants a new connection attempt."""
        return self in _HARD_ERRORS

    def describe(self) -> str:
        """Human readable status text."""
        return _DESCRIPTIONS[self]


_HARD_ERRORS = frozenset({
    State.ECONNECT,
    State.ETIMEOUT,
    State.EWRITE,
    State.EREAD,
    State.EMSGINV,
    State.EMSGSIZE,
    State.ENOCONN,
})

_DESCRIPTIONS = {
    State.OK: "ok",
    State.CLOSE: "connection closed by peer",
    State.PROTOCOL: "protocol error",
    State.ECONNECT: "could not connect",
    State.ETIMEOUT: "timed out",
    State.EWRITE: "could not write",
    State.EREAD: "could not read",
    State.EMSGINV: "invalid message",
    State.EMSGSIZE: "message too big",
    State.ENOCONN: "not connected",
}


class TransportError(Exception):
    """A connection handle could not be created."""


@dataclass
class Message:
    """One request or event."""
    command: str
    route: str
    payload: bytes = b""

    def encode(self) -> bytes:
        """Encode as a complete frame."""
        body = f"{self.command} {self.route}\n".encode() + self.payload
        return f"{len(body)}\n".encode() + body

    @classmethod
    def decode(cls, body: bytes) -> "Message":
        """
        Decode a frame body.

        Raises:
            ValueError: If the body has no `<command> <route>` header line.
        """
        header, sep, payload = body.partition(b"\n")
        if not sep:
            raise ValueError("missing header line")

        command, sep, route = header.decode("utf-8").partition(" ")
        if not command or not sep or not route:
            raise ValueError(f"malformed header: {header!r}")

        return cls(command=command, route=route, payload=payload)


class EventReceiver(Protocol):
    """Receiver of the events read by TcpConnection.listen()."""

    def on_message(self, message: Message) -> State:
        ...


class TcpConnection:
    """
    A reconnectable TCP connection to a ducq server.

    One handle serves every attempt of a run: close() then connect()
    opens a fresh socket. release() ends the handle for good.
    """

    def __init__(self, host: str, port: str):
        """
        Create an unconnected handle.

        Args:
            host: Server address.
            port: Server port, as a decimal string.

        Raises:
            TransportError: If the port is not a valid TCP port.
        """
        try:
            port_number = int(port)
        except (TypeError, ValueError):
            raise TransportError(f"invalid port: {port!r}") from None
        if not 0 < port_number < 65536:
            raise TransportError(f"port out of range: {port_number}")

        self.host = host
        self.port = port_number
        self.last_error = ""

        self._timeout: Optional[float] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._released = False

    def __repr__(self) -> str:
        return f"TcpConnection({self.host}:{self.port})"

    @property
    def is_connected(self) -> bool:
        """Check if a socket is currently open."""
        return self._writer is not None

    @property
    def is_released(self) -> bool:
        """Check if release() was called."""
        return self._released

    @property
    def timeout(self) -> Optional[float]:
        """Get the per-operation timeout in seconds (None: no timeout)."""
        return self._timeout

    async def connect(self) -> State:
        """Open a socket to the server."""
        if self._released:
            self.last_error = "handle released"
            return State.ENOCONN

        if self.is_connected:
            await self.close()

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self.last_error = "connection timed out"
            return State.ETIMEOUT
        except OSError as e:
            self.last_error = e.strerror or str(e)
            return State.ECONNECT
        except UnicodeError as e:
            # host name the idna codec rejects (empty or over-long label)
            self.last_error = f"invalid host name: {e}"
            return State.ECONNECT

        logger.debug(f"Connected to {self.host}:{self.port}")
        return State.OK

    def set_timeout(self, seconds: Optional[float]) -> State:
        """Bound every following connect, write and read by `seconds`."""
        if not self.is_connected:
            self.last_error = "not connected"
            return State.ENOCONN
        if seconds is not None and seconds <= 0:
            self.last_error = f"invalid timeout: {seconds}"
            return State.EMSGINV

        self._timeout = seconds
        return State.OK

    async def emit(self, command: str, route: str, payload: bytes = b"") -> State:
        """Send one request."""
        if not self.is_connected:
            self.last_error = "not connected"
            return State.ENOCONN

        frame = Message(command, route, payload).encode()
        try:
            self._writer.write(frame)
            await asyncio.wait_for(self._writer.drain(), timeout=self._timeout)
        except asyncio.TimeoutError:
            self.last_error = "write timed out"
            return State.ETIMEOUT
        except OSError as e:
            self.last_error = e.strerror or str(e)
            return State.EWRITE

        return State.OK

    async def listen(self, context: EventReceiver) -> State:
        """
        Read events and hand them to `context` until the exchange ends.

        Returns:
            CLOSE when the peer closes the connection between frames,
            the first non-OK state returned by context.on_message(),
            or the error that stopped the read.
        """
        if not self.is_connected:
            self.last_error = "not connected"
            return State.ENOCONN

        while True:
            state, message = await self._receive()
            if state is not State.OK:
                return state

            state = context.on_message(message)
            if state is not State.OK:
                return state

    async def _receive(self) -> tuple[State, Optional[Message]]:
        """Read one frame."""
        try:
            header = await asyncio.wait_for(
                self._reader.readuntil(b"\n"), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            self.last_error = "read timed out"
            return State.ETIMEOUT, None
        except asyncio.IncompleteReadError as e:
            if not e.partial:
                return State.CLOSE, None
            self.last_error = "connection closed inside a frame header"
            return State.EREAD, None
        except asyncio.LimitOverrunError:
            self.last_error = "frame header too long"
            return State.EMSGINV, None
        except OSError as e:
            self.last_error = e.strerror or str(e)
            return State.EREAD, None

        if len(header) > MAX_HEADER_SIZE:
            self.last_error = "frame header too long"
            return State.EMSGINV, None
        try:
            size = int(header.strip())
        except ValueError:
            self.last_error = f"invalid frame header: {header[:MAX_HEADER_SIZE]!r}"
            return State.EMSGINV, None
        if size < 0:
            self.last_error = f"invalid frame size: {size}"
            return State.EMSGINV, None
        if size > MAX_FRAME_SIZE:
            self.last_error = f"frame of {size} bytes exceeds {MAX_FRAME_SIZE}"
            return State.EMSGSIZE, None

        try:
            body = await asyncio.wait_for(
                self._reader.readexactly(size), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            self.last_error = "read timed out"
            return State.ETIMEOUT, None
        except asyncio.IncompleteReadError:
            self.last_error = "connection closed inside a frame"
            return State.EREAD, None
        except OSError as e:
            self.last_error = e.strerror or str(e)
            return State.EREAD, None

        try:
            message = Message.decode(body)
        except (ValueError, UnicodeDecodeError) as e:
            self.last_error = str(e)
            return State.PROTOCOL, None

        return State.OK, message

    async def close(self) -> None:
        """Close the socket. Does nothing if it is not open."""
        writer = self._writer
        if writer is None:
            return

        self._reader = None
        self._writer = None

        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing {self!r}: {e}")

    def release(self) -> None:
        """Drop the handle. Later connect() calls report ENOCONN."""
        if self._released:
            return
        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None
        self._released = True
