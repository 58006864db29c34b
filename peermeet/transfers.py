"""
File transfer engine.

Sender side: a file is announced with a file-meta message, streamed as
file-chunk messages of at most ``chunk_size`` bytes, and closed with a
file-end message.  The send loop yields to the event loop after every
chunk so inbound messages and UI updates keep flowing during a long
transfer.  That yield is the only pacing there is: it does not look at
the transport's buffer or at how fast the receiver keeps up.

Receiver side: chunks are appended in arrival order and concatenated into
an Artifact on file-end.  Chunks are assumed to arrive in send order; a
transport that reorders or drops messages would corrupt the file without
anything here noticing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterator

from typing_extensions import Callable

from .errors import ChannelNotOpen, FrameTooLarge
from .models import Artifact, FileTransferRecord
from .protocol import (
    FileChunkMessage,
    FileEndMessage,
    FileMetaMessage,
    WireMessage,
)

logger = logging.getLogger(__name__)

OUTGOING = "outgoing"
INCOMING = "incoming"


def format_size(size_bytes: int | float) -> str:
    """Human-readable file size."""
    for unit in ("B", "KB", "MB", "GB"):
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def iter_chunks(data: bytes, chunk_size: int) -> Iterator[bytes]:
    """Yield consecutive slices of *data*, each at most *chunk_size* bytes."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
    view = memoryview(data)
    for offset in range(0, len(data), chunk_size):
        yield bytes(view[offset:offset + chunk_size])


class TransferTable:
    """Every transfer seen during a session, keyed by file id."""

    def __init__(self):
        self._records: dict[str, FileTransferRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[FileTransferRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, file_id: str) -> bool:
        return file_id in self._records

    def get(self, file_id: str) -> FileTransferRecord | None:
        return self._records.get(file_id)

    # ------------------------------------------------------------------
    # Sender side
    # ------------------------------------------------------------------

    def register_outgoing(self, meta: FileMetaMessage) -> FileTransferRecord:
        record = FileTransferRecord(
            file_id=meta.file_id,
            file_name=meta.file_name,
            file_size=meta.file_size,
            mime_type=meta.mime_type,
            sender=meta.sender,
            direction=OUTGOING,
        )
        self._records[meta.file_id] = record
        return record

    # ------------------------------------------------------------------
    # Receiver side
    # ------------------------------------------------------------------

    def on_meta(self, meta: FileMetaMessage) -> FileTransferRecord:
        if meta.file_id in self._records:
            logger.warning("File id %s announced twice, replacing", meta.file_id)
        record = FileTransferRecord(
            file_id=meta.file_id,
            file_name=meta.file_name,
            file_size=max(meta.file_size, 0),
            mime_type=meta.mime_type,
            sender=meta.sender,
            direction=INCOMING,
        )
        self._records[meta.file_id] = record
        return record

    def on_chunk(self, message: FileChunkMessage) -> FileTransferRecord | None:
        """Append a chunk.  Returns the record, or None if it was dropped."""
        record = self._records.get(message.file_id)
        if record is None:
            logger.debug("Dropping chunk for unknown file %s", message.file_id)
            return None
        if record.direction != INCOMING or record.complete:
            logger.debug("Dropping chunk for finished file %s", message.file_id)
            return None
        size = len(message.chunk)
        if record.received_bytes + size > record.file_size:
            logger.warning(
                "Dropping chunk for %s: %d bytes would exceed announced size %d",
                record.file_name,
                record.received_bytes + size,
                record.file_size,
            )
            return None
        record.chunks.append(message.chunk)
        record.received_bytes += size
        return record

    def on_end(self, message: FileEndMessage) -> FileTransferRecord | None:
        """Assemble the artifact.  A second file-end for the same id is a no-op."""
        record = self._records.get(message.file_id)
        if record is None:
            logger.debug("Dropping file-end for unknown file %s", message.file_id)
            return None
        if record.direction != INCOMING or record.complete:
            return record
        if record.received_bytes != record.file_size:
            logger.warning(
                "%s ended after %d of %d bytes",
                record.file_name,
                record.received_bytes,
                record.file_size,
            )
        record.artifact = Artifact(
            file_name=record.file_name,
            mime_type=record.mime_type,
            data=b"".join(record.chunks),
        )
        return record


async def pump_file(
    send: Callable[[WireMessage], None],
    record: FileTransferRecord,
    data: bytes,
    chunk_size: int,
    progress_callback: Callable[[FileTransferRecord], None] | None = None,
) -> FileTransferRecord:
    """Stream *data* as chunk messages followed by a file-end message.

    *record* must already be announced with a file-meta message.  Its
    ``received_bytes`` tracks how much has been queued so the local UI can
    show progress.  If the channel closes part way or refuses a chunk as
    too large, the record keeps the partial count, gets an ``error`` and
    the loop stops.
    """
    try:
        for chunk in iter_chunks(data, chunk_size):
            send(FileChunkMessage(file_id=record.file_id, chunk=chunk))
            record.received_bytes += len(chunk)
            if progress_callback:
                progress_callback(record)
            # Let inbound events and UI refreshes run before the next chunk.
            await asyncio.sleep(0)
        send(FileEndMessage(file_id=record.file_id))
    except ChannelNotOpen as e:
        record.error = f"Channel closed after {format_size(record.received_bytes)}"
        logger.warning("Abandoned %s: %s", record.file_name, e)
        if progress_callback:
            progress_callback(record)
        return record
    except FrameTooLarge as e:
        record.error = "Chunk too large for the connection"
        logger.warning("Abandoned %s: %s", record.file_name, e)
        if progress_callback:
            progress_callback(record)
        return record
    except asyncio.CancelledError:
        record.error = "Cancelled"
        raise

    record.received_bytes = record.file_size
    record.artifact = Artifact(
        file_name=record.file_name, mime_type=record.mime_type, data=data
    )
    if progress_callback:
        progress_callback(record)
    return record
