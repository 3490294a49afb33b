"""
Secured session: one TLS-wrapped TCP stream to the paired peer.

The session knows nothing about transfers. It tunes the socket, frames and
serializes writes, and tracks whether the peer has introduced itself.
"""

import asyncio
import logging
import socket
import ssl

from config import SOCKET_BUFFER_SIZE
from transfer.errors import SessionError
from transfer.models import SessionRole, SessionState
from transfer.protocol import Message, decode_message, read_frame, write_frame

logger = logging.getLogger(__name__)


def tune_socket(writer: asyncio.StreamWriter, buffer_size: int = SOCKET_BUFFER_SIZE) -> None:
    """Favor latency for small control frames, leave headroom for chunk bursts."""
    sock = writer.get_extra_info("socket")
    if sock is not None:
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, buffer_size)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, buffer_size)
        except OSError as e:
            logger.debug(f"Socket tuning not applied: {e}")
    writer.transport.set_write_buffer_limits(high=buffer_size)


class SecuredSession:
    """A paired connection in either server or client role."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        role: SessionRole,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self.role = role
        self.state = SessionState.DISCONNECTED
        self.connected_device_name: str | None = None
        self._closed = False
        tune_socket(writer)

    @classmethod
    async def dial(
        cls, host: str, port: int, ssl_context: ssl.SSLContext
    ) -> "SecuredSession":
        """Open a client session. Raises SessionError on TCP/TLS failure."""
        try:
            reader, writer = await asyncio.open_connection(
                host, port, ssl=ssl_context, limit=SOCKET_BUFFER_SIZE
            )
        except (OSError, ssl.SSLError) as e:
            raise SessionError(f"Could not connect to {host}:{port}: {e}") from e
        return cls(reader, writer, SessionRole.CLIENT)

    @property
    def peername(self) -> str:
        peer = self._writer.get_extra_info("peername")
        return f"{peer[0]}:{peer[1]}" if peer else "unknown"

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_connected(self, device_name: str) -> None:
        self.connected_device_name = device_name
        self.state = SessionState.CONNECTED
        logger.info(f"Paired with {device_name} ({self.peername})")

    async def send(self, message) -> None:
        """Write one frame; concurrent callers are serialized."""
        if self._closed:
            raise SessionError("Session is closed")
        async with self._write_lock:
            try:
                await write_frame(self._writer, message)
            except (OSError, ssl.SSLError) as e:
                raise SessionError(f"Write to {self.peername} failed: {e}") from e

    async def receive(self) -> Message:
        """
        Read and decode the next frame.

        ProtocolError means one bad frame (the stream is still aligned).
        asyncio.IncompleteReadError, SessionError or OSError mean the stream
        is gone.
        """
        payload = await read_frame(self._reader)
        return decode_message(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.DISCONNECTED
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.debug(f"Error while closing session: {e}")
