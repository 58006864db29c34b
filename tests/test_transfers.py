"""
Tests for transfers.py — chunking, the transfer table and the send loop.
"""

import asyncio

import pytest

from peermeet.errors import ChannelNotOpen, FrameTooLarge
from peermeet.models import Participant
from peermeet.protocol import (
    FileChunkMessage,
    FileEndMessage,
    FileMetaMessage,
)
from peermeet.transfers import (
    INCOMING,
    OUTGOING,
    TransferTable,
    format_size,
    iter_chunks,
    pump_file,
)

BOB = Participant(id="b0b", display_name="Bob", color_tag="#4ade80")


def meta(file_id="f1", size=10, mime="text/plain", name="notes.txt"):
    return FileMetaMessage(file_id, name, size, mime, BOB)


# ---------------------------------------------------------------------------
# format_size
# ---------------------------------------------------------------------------


class TestFormatSize:
    def test_bytes(self):
        assert format_size(0) == "0.0 B"
        assert format_size(512) == "512.0 B"
        assert format_size(1023) == "1023.0 B"

    def test_kilobytes(self):
        assert format_size(1024) == "1.0 KB"
        assert format_size(2048) == "2.0 KB"

    def test_megabytes(self):
        assert format_size(1024 * 1024) == "1.0 MB"
        assert format_size(int(1.5 * 1024 * 1024)) == "1.5 MB"

    def test_gigabytes(self):
        assert format_size(1024**3) == "1.0 GB"

    def test_terabytes(self):
        assert format_size(1024**4) == "1.0 TB"


# ---------------------------------------------------------------------------
# iter_chunks
# ---------------------------------------------------------------------------


class TestIterChunks:
    @pytest.mark.parametrize("size", [0, 1, 7, 4096, 10000])
    @pytest.mark.parametrize("chunk_size", [1, 3, 4096])
    def test_concatenation_reproduces_input(self, size, chunk_size):
        data = bytes(i % 251 for i in range(size))
        chunks = list(iter_chunks(data, chunk_size))
        assert b"".join(chunks) == data
        assert all(1 <= len(c) <= chunk_size for c in chunks)

    def test_10000_bytes_in_4096_chunks(self):
        chunks = list(iter_chunks(b"x" * 10000, 4096))
        assert [len(c) for c in chunks] == [4096, 4096, 1808]

    def test_empty_input_yields_nothing(self):
        assert list(iter_chunks(b"", 16)) == []

    def test_rejects_zero_chunk_size(self):
        with pytest.raises(ValueError):
            list(iter_chunks(b"abc", 0))


# ---------------------------------------------------------------------------
# TransferTable — receiver side
# ---------------------------------------------------------------------------


class TestReceiving:
    def test_meta_creates_empty_record(self):
        table = TransferTable()
        record = table.on_meta(meta(size=5))
        assert record.direction == INCOMING
        assert record.received_bytes == 0
        assert record.chunks == []
        assert record.artifact is None
        assert table.get("f1") is record

    def test_chunks_accumulate_in_order(self):
        table = TransferTable()
        table.on_meta(meta(size=6))
        table.on_chunk(FileChunkMessage("f1", b"abc"))
        record = table.on_chunk(FileChunkMessage("f1", b"def"))
        assert record.chunks == [b"abc", b"def"]
        assert record.received_bytes == 6
        assert record.progress == 1.0

    def test_received_bytes_is_monotonic_and_bounded(self):
        table = TransferTable()
        table.on_meta(meta(size=5))
        seen = []
        for piece in (b"ab", b"cd", b"efg", b"e"):
            table.on_chunk(FileChunkMessage("f1", piece))
            seen.append(table.get("f1").received_bytes)
        assert seen == sorted(seen)
        assert max(seen) <= 5
        assert table.get("f1").received_bytes == 5

    def test_end_assembles_artifact_with_mime(self):
        table = TransferTable()
        table.on_meta(meta(size=6, mime="image/png", name="dot.png"))
        table.on_chunk(FileChunkMessage("f1", b"\x89PN"))
        table.on_chunk(FileChunkMessage("f1", b"G\r\n"))
        record = table.on_end(FileEndMessage("f1"))
        assert record.artifact.data == b"\x89PNG\r\n"
        assert record.artifact.mime_type == "image/png"
        assert record.artifact.file_name == "dot.png"
        assert record.complete

    def test_duplicate_end_is_idempotent(self):
        table = TransferTable()
        table.on_meta(meta(size=3))
        table.on_chunk(FileChunkMessage("f1", b"abc"))
        first = table.on_end(FileEndMessage("f1")).artifact
        second = table.on_end(FileEndMessage("f1")).artifact
        assert second is first

    def test_chunk_after_end_is_dropped(self):
        table = TransferTable()
        table.on_meta(meta(size=10))
        table.on_chunk(FileChunkMessage("f1", b"abc"))
        table.on_end(FileEndMessage("f1"))
        assert table.on_chunk(FileChunkMessage("f1", b"def")) is None
        assert table.get("f1").received_bytes == 3
        assert table.get("f1").artifact.data == b"abc"

    def test_unknown_file_id_is_dropped(self):
        table = TransferTable()
        table.on_meta(meta(size=3))
        table.on_chunk(FileChunkMessage("f1", b"a"))
        assert table.on_chunk(FileChunkMessage("nope", b"zzz")) is None
        assert table.on_end(FileEndMessage("nope")) is None
        assert "nope" not in table
        assert len(table) == 1
        assert table.get("f1").received_bytes == 1
        assert table.get("f1").artifact is None

    def test_zero_byte_file(self):
        table = TransferTable()
        record = table.on_meta(meta(size=0))
        assert record.progress == 0.0
        table.on_end(FileEndMessage("f1"))
        assert record.artifact.data == b""
        assert record.progress == 1.0
        assert record.complete


# ---------------------------------------------------------------------------
# pump_file — sender side
# ---------------------------------------------------------------------------


class TestPumpFile:
    def test_sends_chunks_then_end(self):
        sent = []
        table = TransferTable()
        data = bytes(range(200)) * 50
        record = table.register_outgoing(meta(size=len(data)))

        asyncio.run(pump_file(sent.append, record, data, 4096))

        chunks = [m for m in sent if isinstance(m, FileChunkMessage)]
        assert [len(m.chunk) for m in chunks] == [4096, 4096, 1808]
        assert isinstance(sent[-1], FileEndMessage)
        assert b"".join(m.chunk for m in chunks) == data
        assert record.direction == OUTGOING
        assert record.received_bytes == len(data)
        assert record.artifact.data == data
        assert record.progress == 1.0

    def test_yields_between_chunks(self):
        """Another task gets to run between every pair of chunks."""
        events = []
        table = TransferTable()
        record = table.register_outgoing(meta(size=3))

        async def other():
            for _ in range(3):
                events.append("other")
                await asyncio.sleep(0)

        async def run():
            await asyncio.gather(
                pump_file(lambda m: events.append(type(m).__name__), record, b"abc", 1),
                other(),
            )

        asyncio.run(run())
        chunk_positions = [i for i, e in enumerate(events) if e == "FileChunkMessage"]
        assert len(chunk_positions) == 3
        for a, b in zip(chunk_positions, chunk_positions[1:]):
            assert "other" in events[a:b]

    def test_progress_callback_tracks_queued_bytes(self):
        seen = []
        table = TransferTable()
        record = table.register_outgoing(meta(size=10))
        asyncio.run(
            pump_file(lambda m: None, record, b"0123456789", 4, lambda r: seen.append(r.received_bytes))
        )
        assert seen[:3] == [4, 8, 10]
        assert seen[-1] == 10

    def test_closed_channel_abandons_cleanly(self):
        table = TransferTable()
        record = table.register_outgoing(meta(size=10))
        sent = []

        def send(message):
            if len(sent) == 2:
                raise ChannelNotOpen("gone")
            sent.append(message)

        asyncio.run(pump_file(send, record, b"0123456789", 4))
        assert record.received_bytes == 8
        assert record.artifact is None
        assert record.failed
        assert not record.complete

    def test_refused_chunk_abandons_cleanly(self):
        table = TransferTable()
        record = table.register_outgoing(meta(size=10))

        def send(message):
            raise FrameTooLarge("too big")

        asyncio.run(pump_file(send, record, b"0123456789", 10))
        assert record.failed
        assert not record.complete
        assert record.received_bytes == 0
