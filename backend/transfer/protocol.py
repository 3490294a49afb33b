"""
Wire protocol for the paired session.

Every control message is a JSON object tagged by its `event` field and
travels in a length-prefixed frame:

    +----------------+---------------------------+
    | length (4B BE) | UTF-8 JSON, `length` bytes |
    +----------------+---------------------------+

A byte stream does not keep write boundaries, so the header is what tells
the reader where one message ends and the next begins.
"""

import asyncio
import base64
import struct
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from config import MAX_FRAME_SIZE
from transfer.errors import ProtocolError, SessionError
from transfer.models import TransferDescriptor

HEADER_FORMAT = "!I"  # 4-byte payload length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

_MESSAGE_CONFIG = ConfigDict(
    frozen=True, populate_by_name=True, extra="forbid", strict=True
)


class ConnectMessage(BaseModel):
    model_config = _MESSAGE_CONFIG

    event: Literal["connect"] = "connect"
    device_name: str = Field(alias="deviceName", min_length=1)


class FileAckMessage(BaseModel):
    model_config = _MESSAGE_CONFIG

    event: Literal["file_ack"] = "file_ack"
    file: TransferDescriptor


class SendChunkAckMessage(BaseModel):
    """Receiver asks for chunk `chunk_no`."""
    model_config = _MESSAGE_CONFIG

    event: Literal["send_chunk_ack"] = "send_chunk_ack"
    chunk_no: int = Field(alias="chunkNo", ge=0)


class ReceiveChunkAckMessage(BaseModel):
    """Sender delivers chunk `chunk_no`, base64-encoded."""
    model_config = _MESSAGE_CONFIG

    event: Literal["receive_chunk_ack"] = "receive_chunk_ack"
    chunk: str
    chunk_no: int = Field(alias="chunkNo", ge=0)

    @classmethod
    def from_bytes(cls, chunk_no: int, data: bytes) -> "ReceiveChunkAckMessage":
        return cls(chunk=base64.b64encode(data).decode("ascii"), chunk_no=chunk_no)


Message = Annotated[
    Union[ConnectMessage, FileAckMessage, SendChunkAckMessage, ReceiveChunkAckMessage],
    Field(discriminator="event"),
]

_message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def encode_message(message: BaseModel) -> bytes:
    """Serialize a message into a complete frame (header + JSON)."""
    payload = message.model_dump_json(by_alias=True).encode("utf-8")
    return struct.pack(HEADER_FORMAT, len(payload)) + payload


def decode_message(payload: bytes) -> Message:
    """Validate a frame payload. Raises ProtocolError on anything unknown."""
    try:
        return _message_adapter.validate_json(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid control frame: {e.error_count()} error(s)") from e


async def write_frame(writer: asyncio.StreamWriter, message: BaseModel) -> None:
    writer.write(encode_message(message))
    await writer.drain()


async def read_frame(
    reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE
) -> bytes:
    """
    Read one frame payload.

    Raises asyncio.IncompleteReadError when the peer closes mid-frame and
    SessionError when the announced length exceeds `max_size`; in both
    cases the stream can no longer be trusted.
    """
    header = await reader.readexactly(HEADER_SIZE)
    (length,) = struct.unpack(HEADER_FORMAT, header)
    if length > max_size:
        raise SessionError(f"Frame of {length} bytes exceeds limit of {max_size}")
    if length == 0:
        return b""
    return await reader.readexactly(length)
