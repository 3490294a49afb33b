"""Models for file transfer."""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from config import CHUNK_SIZE, MAX_FILE_SIZE


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class SessionRole(str, Enum):
    SERVER = "server"
    CLIENT = "client"


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class TransferDescriptor(BaseModel):
    """Announced in `file_ack`; immutable once created."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    id: uuid.UUID
    name: str = Field(min_length=1)
    size: int = Field(ge=0, le=MAX_FILE_SIZE)
    mime_type: str = Field(alias="mimeType")
    total_chunks: int = Field(alias="totalChunks", ge=0)

    @model_validator(mode="after")
    def check_chunk_count(self) -> "TransferDescriptor":
        expected = (self.size + CHUNK_SIZE - 1) // CHUNK_SIZE
        if self.total_chunks != expected:
            raise ValueError(
                f"{self.size} bytes take {expected} chunks, not {self.total_chunks}"
            )
        return self


class FileSource(BaseModel):
    """An outbound file as handed over by the file picker."""
    path: str
    name: str
    size: int
    mime_tag: str = "file"


class CompletedFileRecord(BaseModel):
    """A finished transfer, kept in the manager's history."""
    id: uuid.UUID
    name: str
    size_bytes: int
    mime_tag: str
    local_path: str
    direction: TransferDirection
    available_for_open: bool = False


@dataclass
class OutboundChunkSet:
    descriptor: TransferDescriptor
    chunks: list[bytes]
    source_path: str
    completion: asyncio.Future

    @property
    def total_chunks(self) -> int:
        return self.descriptor.total_chunks


@dataclass
class InboundChunkSet:
    descriptor: TransferDescriptor
    completion: asyncio.Future
    chunks: list[bytes | None] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.chunks:
            self.chunks = [None] * self.descriptor.total_chunks

    @property
    def total_chunks(self) -> int:
        return self.descriptor.total_chunks

    def is_complete(self) -> bool:
        return all(chunk is not None for chunk in self.chunks)
