import asyncio
import json
import struct
import unittest

from transfer.errors import ProtocolError, SessionError
from transfer.models import TransferDescriptor
from transfer.protocol import (
    HEADER_SIZE,
    ConnectMessage,
    FileAckMessage,
    ReceiveChunkAckMessage,
    SendChunkAckMessage,
    decode_message,
    encode_message,
    read_frame,
)


TRANSFER_ID = "6f1c0a52-8a0e-4c1e-9a53-3c7d2f1e5b10"


def frame(payload: dict) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    return struct.pack("!I", len(body)) + body


class EncodeTest(unittest.TestCase):

    def test_header_carries_payload_length(self):
        data = encode_message(SendChunkAckMessage(chunk_no=3))
        (length,) = struct.unpack("!I", data[:HEADER_SIZE])
        self.assertEqual(length, len(data) - HEADER_SIZE)

    def test_wire_names_use_camel_case(self):
        data = encode_message(SendChunkAckMessage(chunk_no=3))
        payload = json.loads(data[HEADER_SIZE:])
        self.assertEqual(payload, {"event": "send_chunk_ack", "chunkNo": 3})

    def test_file_ack_wire_shape(self):
        descriptor = TransferDescriptor(
            id=TRANSFER_ID, name="a.txt", size=20000, mime_type="file", total_chunks=3
        )
        payload = json.loads(encode_message(FileAckMessage(file=descriptor))[HEADER_SIZE:])
        self.assertEqual(payload["event"], "file_ack")
        self.assertEqual(payload["file"], {
            "id": TRANSFER_ID, "name": "a.txt", "size": 20000,
            "mimeType": "file", "totalChunks": 3,
        })

    def test_chunk_payload_is_base64(self):
        message = ReceiveChunkAckMessage.from_bytes(0, b"\x00\xffhello")
        self.assertEqual(message.chunk, "AP9oZWxsbw==")


class DecodeTest(unittest.TestCase):

    def test_decodes_each_event_kind(self):
        self.assertIsInstance(
            decode_message(b'{"event": "connect", "deviceName": "Pixel"}'),
            ConnectMessage,
        )
        self.assertIsInstance(
            decode_message(b'{"event": "send_chunk_ack", "chunkNo": 0}'),
            SendChunkAckMessage,
        )
        message = decode_message(
            b'{"event": "receive_chunk_ack", "chunk": "aGk=", "chunkNo": 4}'
        )
        self.assertIsInstance(message, ReceiveChunkAckMessage)
        self.assertEqual(message.chunk_no, 4)
        message = decode_message(json.dumps({
            "event": "file_ack",
            "file": {"id": TRANSFER_ID, "name": "n", "size": 1, "mimeType": ".jpg", "totalChunks": 1},
        }).encode())
        self.assertEqual(message.file.mime_type, ".jpg")

    def test_rejects_unknown_event(self):
        with self.assertRaises(ProtocolError):
            decode_message(b'{"event": "pause"}')

    def test_rejects_missing_field(self):
        with self.assertRaises(ProtocolError):
            decode_message(b'{"event": "send_chunk_ack"}')

    def test_rejects_extra_field(self):
        with self.assertRaises(ProtocolError):
            decode_message(b'{"event": "send_chunk_ack", "chunkNo": 1, "window": 4}')

    def test_rejects_wrong_types(self):
        with self.assertRaises(ProtocolError):
            decode_message(b'{"event": "send_chunk_ack", "chunkNo": "1"}')
        with self.assertRaises(ProtocolError):
            decode_message(b'{"event": "send_chunk_ack", "chunkNo": -1}')

    def test_rejects_inconsistent_descriptor(self):
        def file_ack(**overrides):
            descriptor = {
                "id": TRANSFER_ID, "name": "a.bin", "size": 20000,
                "mimeType": "file", "totalChunks": 3,
            }
            descriptor.update(overrides)
            return json.dumps({"event": "file_ack", "file": descriptor}).encode()

        decode_message(file_ack())
        for overrides in (
            {"totalChunks": 1},
            {"totalChunks": 4},
            {"size": 0},
            {"totalChunks": 4 * 10 ** 18, "size": 4 * 10 ** 18 * 8192},
            {"id": "not-a-uuid"},
        ):
            with self.subTest(**overrides):
                with self.assertRaises(ProtocolError):
                    decode_message(file_ack(**overrides))

    def test_rejects_invalid_json(self):
        with self.assertRaises(ProtocolError):
            decode_message(b'{"event": ')
        with self.assertRaises(ProtocolError):
            decode_message(b"")


class ReadFrameTest(unittest.IsolatedAsyncioTestCase):

    async def test_coalesced_frames_are_split(self):
        reader = asyncio.StreamReader()
        reader.feed_data(
            frame({"event": "send_chunk_ack", "chunkNo": 0})
            + frame({"event": "send_chunk_ack", "chunkNo": 1})
        )
        first = decode_message(await read_frame(reader))
        second = decode_message(await read_frame(reader))
        self.assertEqual((first.chunk_no, second.chunk_no), (0, 1))

    async def test_fragmented_frame_is_joined(self):
        reader = asyncio.StreamReader()
        data = frame({"event": "connect", "deviceName": "Galaxy"})

        async def trickle():
            for i in range(len(data)):
                reader.feed_data(data[i:i + 1])
                await asyncio.sleep(0)

        feeder = asyncio.create_task(trickle())
        message = decode_message(await read_frame(reader))
        await feeder
        self.assertEqual(message.device_name, "Galaxy")

    async def test_oversized_frame_is_fatal(self):
        reader = asyncio.StreamReader()
        reader.feed_data(struct.pack("!I", 2048) + b"x" * 10)
        with self.assertRaises(SessionError):
            await read_frame(reader, max_size=1024)

    async def test_eof_mid_frame(self):
        reader = asyncio.StreamReader()
        reader.feed_data(struct.pack("!I", 100) + b"{}")
        reader.feed_eof()
        with self.assertRaises(asyncio.IncompleteReadError):
            await read_frame(reader)


if __name__ == "__main__":
    unittest.main()
