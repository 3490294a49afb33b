"""
Transfer state machine.

Two independent slots share one session: an outbound slot (Idle -> Sending
-> Idle) and an inbound slot (Idle -> Receiving -> Idle). Each slot holds at
most one chunk set. Flow control is strict stop-and-wait: chunk `n` is only
emitted in answer to a request for chunk `n`, so at most one chunk is ever
in flight and the chunk arrays need no locking.

The machine never touches the socket. Every operation returns the reply the
caller must write (or None), which keeps it testable without a network.
"""

import asyncio
import base64
import binascii
import logging
import math
import os
import tempfile
import uuid
from pathlib import Path

from config import CHUNK_SIZE
from transfer.errors import StorageError, TransferBusyError
from transfer.models import (
    CompletedFileRecord,
    FileSource,
    InboundChunkSet,
    OutboundChunkSet,
    TransferDescriptor,
    TransferDirection,
)
from transfer.protocol import (
    FileAckMessage,
    ReceiveChunkAckMessage,
    SendChunkAckMessage,
)

logger = logging.getLogger(__name__)


def count_chunks(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return math.ceil(size / chunk_size)


def split_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> list[bytes]:
    """Split `data` into fixed-size blocks; the last one may be shorter."""
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


def join_chunks(chunks: list[bytes | None]) -> bytes:
    """Concatenate chunks in index order."""
    if any(chunk is None for chunk in chunks):
        raise ValueError("Cannot join an incomplete chunk set")
    return b"".join(chunks)


def _write_atomic(directory: str, name: str, data: bytes) -> str:
    """Write via a temp file in the same directory, then rename into place."""
    os.makedirs(directory, exist_ok=True)
    target = os.path.join(directory, name)
    fd, tmp_path = tempfile.mkstemp(prefix=".partial-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    return target


class TransferStateMachine:
    """Owns the outbound and inbound chunk sets of one session."""

    def __init__(self, save_dir: str) -> None:
        self.save_dir = save_dir
        self._outbound: OutboundChunkSet | None = None
        self._inbound: InboundChunkSet | None = None
        self._started = asyncio.Event()
        self.total_sent_bytes = 0
        self.total_received_bytes = 0

    @property
    def outbound(self) -> OutboundChunkSet | None:
        return self._outbound

    @property
    def inbound(self) -> InboundChunkSet | None:
        return self._inbound

    @property
    def sending(self) -> bool:
        return self._outbound is not None

    @property
    def receiving(self) -> bool:
        return self._inbound is not None

    @property
    def busy(self) -> bool:
        return self.sending or self.receiving

    async def wait_started(self) -> None:
        """Block until a send or receive opens a slot."""
        self._started.clear()
        if self.busy:
            return
        await self._started.wait()

    # --- Sender side ---

    def start_send(
        self, source: FileSource, data: bytes
    ) -> tuple[OutboundChunkSet, FileAckMessage]:
        """
        Chunk `data` and open the outbound slot.

        Returns the chunk set (whose `completion` future resolves when the
        last chunk goes out) and the `file_ack` announcement. A zero-byte
        file has no chunks to request, so its send completes right here.
        """
        if self._outbound is not None:
            raise TransferBusyError(
                f"Still sending '{self._outbound.descriptor.name}'"
            )

        chunks = split_chunks(data)
        descriptor = TransferDescriptor(
            id=uuid.uuid4(),
            name=source.name,
            size=len(data),
            mime_type=source.mime_tag,
            total_chunks=len(chunks),
        )
        outbound = OutboundChunkSet(
            descriptor=descriptor,
            chunks=chunks,
            source_path=source.path,
            completion=asyncio.get_running_loop().create_future(),
        )
        self._outbound = outbound
        self._started.set()
        logger.info(
            f"Sending '{descriptor.name}' ({descriptor.size} bytes, "
            f"{descriptor.total_chunks} chunks)"
        )

        announcement = FileAckMessage(file=descriptor)
        if descriptor.total_chunks == 0:
            self._finish_send()
        return outbound, announcement

    def handle_send_chunk_ack(self, chunk_no: int) -> ReceiveChunkAckMessage | None:
        """Answer a request for chunk `chunk_no`."""
        outbound = self._outbound
        if outbound is None:
            logger.warning(f"Chunk {chunk_no} requested but nothing is being sent")
            return None
        if not 0 <= chunk_no < outbound.total_chunks:
            logger.warning(
                f"Chunk {chunk_no} requested outside 0..{outbound.total_chunks - 1}"
            )
            return None

        chunk = outbound.chunks[chunk_no]
        reply = ReceiveChunkAckMessage.from_bytes(chunk_no, chunk)
        self.total_sent_bytes += len(chunk)

        if chunk_no == outbound.total_chunks - 1:
            self._finish_send()
        return reply

    def _finish_send(self) -> None:
        outbound = self._outbound
        self._outbound = None
        descriptor = outbound.descriptor
        record = CompletedFileRecord(
            id=descriptor.id,
            name=descriptor.name,
            size_bytes=descriptor.size,
            mime_tag=descriptor.mime_type,
            local_path=outbound.source_path,
            direction=TransferDirection.SENDING,
            available_for_open=True,
        )
        logger.info(f"All chunks of '{descriptor.name}' sent")
        if not outbound.completion.done():
            outbound.completion.set_result(record)

    # --- Receiver side ---

    async def start_receive(
        self, descriptor: TransferDescriptor
    ) -> tuple[InboundChunkSet, SendChunkAckMessage | None]:
        """
        Open the inbound slot and request the first chunk.

        An empty file is saved immediately and no request is returned.
        """
        if self._inbound is not None:
            raise TransferBusyError(
                f"Still receiving '{self._inbound.descriptor.name}'"
            )

        inbound = InboundChunkSet(
            descriptor=descriptor,
            completion=asyncio.get_running_loop().create_future(),
        )
        self._inbound = inbound
        self._started.set()
        logger.info(
            f"Receiving '{descriptor.name}' ({descriptor.size} bytes, "
            f"{descriptor.total_chunks} chunks)"
        )

        if descriptor.total_chunks == 0:
            await self._finish_receive()
            return inbound, None
        return inbound, SendChunkAckMessage(chunk_no=0)

    async def handle_chunk(
        self, chunk_no: int, encoded: str
    ) -> SendChunkAckMessage | None:
        """Store chunk `chunk_no`; request the next one or finalize."""
        inbound = self._inbound
        if inbound is None:
            logger.warning(f"Chunk {chunk_no} arrived but nothing is being received")
            return None
        if not 0 <= chunk_no < inbound.total_chunks:
            logger.warning(
                f"Chunk {chunk_no} outside 0..{inbound.total_chunks - 1}, ignored"
            )
            return None
        if inbound.chunks[chunk_no] is not None:
            logger.warning(f"Chunk {chunk_no} already stored, ignored")
            return None

        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Chunk {chunk_no} is not valid base64: {e}")
            return None

        inbound.chunks[chunk_no] = data
        self.total_received_bytes += len(data)

        if chunk_no + 1 == inbound.total_chunks:
            await self._finish_receive()
            return None
        return SendChunkAckMessage(chunk_no=chunk_no + 1)

    async def _finish_receive(self) -> None:
        inbound = self._inbound
        descriptor = inbound.descriptor
        name = Path(descriptor.name).name or str(descriptor.id)

        try:
            payload = join_chunks(inbound.chunks)
            if len(payload) != descriptor.size:
                raise ValueError(
                    f"got {len(payload)} bytes, {descriptor.size} were announced"
                )
            path = await asyncio.to_thread(_write_atomic, self.save_dir, name, payload)
        except (OSError, ValueError) as e:
            logger.error(f"Could not save '{descriptor.name}': {e}")
            if self._inbound is inbound:
                self._inbound = None
            if not inbound.completion.done():
                inbound.completion.set_exception(
                    StorageError(f"Could not save '{descriptor.name}': {e}")
                )
            return

        if inbound.completion.cancelled():
            # Torn down while the write was in progress
            logger.info(f"Discarding '{descriptor.name}', transfer was abandoned")
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")
            return

        record = CompletedFileRecord(
            id=descriptor.id,
            name=name,
            size_bytes=len(payload),
            mime_tag=descriptor.mime_type,
            local_path=path,
            direction=TransferDirection.RECEIVING,
            available_for_open=True,
        )

        if self._inbound is inbound:
            self._inbound = None
        logger.info(f"File saved successfully: {path}")
        if not inbound.completion.done():
            inbound.completion.set_result(record)

    # --- Teardown ---

    def reset(self) -> None:
        """Drop both slots; nothing in flight survives a closed session."""
        for chunk_set in (self._outbound, self._inbound):
            if chunk_set is not None and not chunk_set.completion.done():
                chunk_set.completion.cancel()
        if self._outbound or self._inbound:
            logger.info("Discarding in-flight transfer state")
        self._outbound = None
        self._inbound = None
        self.total_sent_bytes = 0
        self.total_received_bytes = 0
