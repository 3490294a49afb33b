"""
Control-message router.

Reads frames off a session and dispatches them to the transfer state
machine or to connection bookkeeping. A bad frame or an ack the machine
cannot place is logged and skipped; only a broken stream ends the loop.
"""

import asyncio
import logging
import ssl
from typing import Awaitable, Callable

from config import TRANSFER_STALL_TIMEOUT
from transfer.errors import ProtocolError, SessionError, TransferBusyError
from transfer.machine import TransferStateMachine
from transfer.models import InboundChunkSet, TransferDirection
from transfer.protocol import (
    ConnectMessage,
    FileAckMessage,
    ReceiveChunkAckMessage,
    SendChunkAckMessage,
)
from transfer.session import SecuredSession

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict], Awaitable[None]]


async def _ignore_event(event_type: str, data: dict) -> None:
    return None


class ControlMessageRouter:
    """Pumps one session until it closes."""

    def __init__(
        self,
        session: SecuredSession,
        machine: TransferStateMachine,
        emit: EventCallback = _ignore_event,
        on_receive_started: Callable[[InboundChunkSet], None] | None = None,
        stall_timeout: float | None = TRANSFER_STALL_TIMEOUT,
    ) -> None:
        self._session = session
        self._machine = machine
        self._emit = emit
        self._on_receive_started = on_receive_started
        self._stall_timeout = stall_timeout

    async def run(self) -> None:
        """
        Dispatch frames until the peer hangs up.

        Returns on a clean close. Raises SessionError when the stream breaks
        or a transfer stalls for longer than the stall timeout.
        """
        while True:
            try:
                message = await self._next_message()
            except ProtocolError as e:
                logger.warning(f"Ignoring frame from {self._session.peername}: {e}")
                continue
            except asyncio.IncompleteReadError as e:
                if e.partial:
                    raise SessionError("Connection closed mid-frame") from e
                logger.info(f"Peer {self._session.peername} closed the connection")
                return
            except asyncio.TimeoutError as e:
                raise SessionError(
                    f"No frame from peer for {self._stall_timeout:g}s during a transfer"
                ) from e
            except (OSError, ssl.SSLError) as e:
                raise SessionError(f"Connection error: {e}") from e

            await self.dispatch(message)

    async def _next_message(self):
        """
        Wait for the next frame, bounded by the stall timeout while busy.

        A transfer can start while the read is already pending, so an idle
        wait also watches the machine and switches to the bounded wait. The
        pending read itself is never interrupted except on a stall.
        """
        read = asyncio.ensure_future(self._session.receive())
        try:
            while True:
                if self._machine.busy:
                    done, _ = await asyncio.wait({read}, timeout=self._stall_timeout)
                    if not done:
                        raise asyncio.TimeoutError()
                    return read.result()

                started = asyncio.ensure_future(self._machine.wait_started())
                try:
                    await asyncio.wait(
                        {read, started}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    started.cancel()
                if read.done():
                    return read.result()
        finally:
            if not read.done():
                read.cancel()

    async def dispatch(self, message) -> None:
        """Route one decoded message."""
        if isinstance(message, ConnectMessage):
            await self._on_connect(message)
        elif isinstance(message, FileAckMessage):
            await self._on_file_ack(message)
        elif isinstance(message, SendChunkAckMessage):
            await self._on_send_chunk_ack(message)
        elif isinstance(message, ReceiveChunkAckMessage):
            await self._on_receive_chunk_ack(message)
        else:
            logger.warning(f"No route for message {type(message).__name__}")

    async def _on_connect(self, message: ConnectMessage) -> None:
        self._session.mark_connected(message.device_name)
        await self._emit("connection_state", {
            "connected": True,
            "device_name": message.device_name,
            "role": self._session.role.value,
        })

    async def _on_file_ack(self, message: FileAckMessage) -> None:
        descriptor = message.file
        try:
            inbound, reply = await self._machine.start_receive(descriptor)
        except TransferBusyError as e:
            logger.warning(f"Rejected incoming '{descriptor.name}': {e}")
            await self._emit("notification", {
                "type": "warning",
                "message": "A file is still being received. Wait for it to finish.",
            })
            return

        if self._on_receive_started is not None:
            self._on_receive_started(inbound)
        await self._emit("transfer_started", {
            "direction": TransferDirection.RECEIVING.value,
            "file": descriptor.model_dump(mode="json"),
        })
        if reply is not None:
            await self._session.send(reply)

    async def _on_send_chunk_ack(self, message: SendChunkAckMessage) -> None:
        outbound = self._machine.outbound
        reply = self._machine.handle_send_chunk_ack(message.chunk_no)
        if reply is None:
            return
        await self._session.send(reply)
        await self._emit("transfer_progress", {
            "direction": TransferDirection.SENDING.value,
            "transfer_id": str(outbound.descriptor.id),
            "chunk_no": message.chunk_no,
            "total_chunks": outbound.total_chunks,
            "total_bytes": self._machine.total_sent_bytes,
        })

    async def _on_receive_chunk_ack(self, message: ReceiveChunkAckMessage) -> None:
        inbound = self._machine.inbound
        before = self._machine.total_received_bytes
        reply = await self._machine.handle_chunk(message.chunk_no, message.chunk)
        if inbound is not None and self._machine.total_received_bytes != before:
            await self._emit("transfer_progress", {
                "direction": TransferDirection.RECEIVING.value,
                "transfer_id": str(inbound.descriptor.id),
                "chunk_no": message.chunk_no,
                "total_chunks": inbound.total_chunks,
                "total_bytes": self._machine.total_received_bytes,
            })
        if reply is not None:
            await self._session.send(reply)
