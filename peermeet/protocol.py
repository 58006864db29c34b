"""
Wire protocol for the data channel.

Every message is a JSON object with a ``type`` discriminator:

    chat        id, sender, content, timestamp
    user-info   user
    file-meta   fileId, fileName, fileSize, fileType, sender
    file-chunk  fileId, chunk
    file-end    fileId

File chunks carry raw bytes, which JSON cannot hold, so ``chunk`` is a
list of byte values (0-255).  Decoding rebuilds the exact buffer.

Byte-stream transports (TCP) additionally frame each message with a
4-byte big-endian length prefix so the receiver knows exactly how many
bytes to read:

    [ 4 bytes: length ][ N bytes: UTF-8 JSON ]
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from dataclasses import dataclass
from typing import Union

from .config import MAX_FRAME_SIZE
from .errors import FrameTooLarge, ProtocolError
from .models import ChatEntry, Participant

logger = logging.getLogger(__name__)

CHAT = "chat"
USER_INFO = "user-info"
FILE_META = "file-meta"
FILE_CHUNK = "file-chunk"
FILE_END = "file-end"

# Room left for the file-chunk envelope around the byte list.
CHUNK_ENVELOPE_OVERHEAD = 256


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    entry: ChatEntry


@dataclass(frozen=True)
class PresenceMessage:
    user: Participant


@dataclass(frozen=True)
class FileMetaMessage:
    file_id: str
    file_name: str
    file_size: int
    mime_type: str
    sender: Participant


@dataclass(frozen=True)
class FileChunkMessage:
    file_id: str
    chunk: bytes


@dataclass(frozen=True)
class FileEndMessage:
    file_id: str


WireMessage = Union[
    ChatMessage, PresenceMessage, FileMetaMessage, FileChunkMessage, FileEndMessage
]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _participant_to_wire(user: Participant) -> dict:
    return {"id": user.id, "name": user.display_name, "color": user.color_tag}


def _participant_from_wire(obj) -> Participant:
    if not isinstance(obj, dict):
        raise ProtocolError("participant must be an object")
    return Participant(
        id=str(obj["id"]),
        display_name=str(obj["name"]),
        color_tag=str(obj.get("color", "")),
    )


def encode_message(message: WireMessage) -> str:
    """Serialize a wire message to its JSON text form."""
    if isinstance(message, ChatMessage):
        entry = message.entry
        obj = {
            "type": CHAT,
            "id": entry.id,
            "sender": _participant_to_wire(entry.sender),
            "content": entry.content,
            "timestamp": entry.sent_at,
        }
    elif isinstance(message, PresenceMessage):
        obj = {"type": USER_INFO, "user": _participant_to_wire(message.user)}
    elif isinstance(message, FileMetaMessage):
        obj = {
            "type": FILE_META,
            "fileId": message.file_id,
            "fileName": message.file_name,
            "fileSize": message.file_size,
            "fileType": message.mime_type,
            "sender": _participant_to_wire(message.sender),
        }
    elif isinstance(message, FileChunkMessage):
        obj = {
            "type": FILE_CHUNK,
            "fileId": message.file_id,
            "chunk": list(message.chunk),
        }
    elif isinstance(message, FileEndMessage):
        obj = {"type": FILE_END, "fileId": message.file_id}
    else:
        raise TypeError(f"Not a wire message: {message!r}")
    return json.dumps(obj, separators=(",", ":"))


def max_chunk_size(frame_limit: int = MAX_FRAME_SIZE) -> int:
    """Largest chunk whose file-chunk message always fits in *frame_limit*.

    The worst case is every byte encoding as ``255,`` (4 characters).
    """
    return (frame_limit - CHUNK_ENVELOPE_OVERHEAD) // 4


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode_chunk(value) -> bytes:
    if not isinstance(value, list):
        raise ProtocolError("chunk must be a list of byte values")
    try:
        return bytes(value)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"invalid chunk byte values: {e}") from e


def decode_message(payload: str | bytes) -> WireMessage | None:
    """Parse a payload received from the data channel.

    Returns None for messages of an unknown ``type`` so newer peers can
    add kinds without breaking older ones.  Raises ProtocolError when the
    payload is not valid JSON or a known kind is missing fields.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"payload is not UTF-8: {e}") from e

    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"payload is not JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ProtocolError("payload must be a JSON object")

    kind = obj.get("type")
    try:
        if kind == CHAT:
            entry = ChatEntry(
                id=str(obj["id"]),
                sender=_participant_from_wire(obj["sender"]),
                content=str(obj["content"]),
                sent_at=int(obj["timestamp"]),
            )
            return ChatMessage(entry)
        if kind == USER_INFO:
            return PresenceMessage(_participant_from_wire(obj["user"]))
        if kind == FILE_META:
            return FileMetaMessage(
                file_id=str(obj["fileId"]),
                file_name=str(obj["fileName"]),
                file_size=int(obj["fileSize"]),
                mime_type=str(obj.get("fileType") or "application/octet-stream"),
                sender=_participant_from_wire(obj["sender"]),
            )
        if kind == FILE_CHUNK:
            return FileChunkMessage(
                file_id=str(obj["fileId"]), chunk=_decode_chunk(obj["chunk"])
            )
        if kind == FILE_END:
            return FileEndMessage(file_id=str(obj["fileId"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"malformed {kind} message: {e!r}") from e

    logger.debug("Ignoring message of unknown type %r", kind)
    return None


# ---------------------------------------------------------------------------
# Stream framing (for byte-stream transports)
# ---------------------------------------------------------------------------


def write_frame(writer: asyncio.StreamWriter, text: str) -> None:
    """Queue a UTF-8 string with a 4-byte length prefix on *writer*.

    Raises FrameTooLarge, without writing anything, if the encoded text
    exceeds MAX_FRAME_SIZE.
    """
    data = text.encode("utf-8")
    if len(data) > MAX_FRAME_SIZE:
        raise FrameTooLarge(
            f"Outgoing frame too large: {len(data)} bytes (max {MAX_FRAME_SIZE})"
        )
    writer.write(struct.pack("!I", len(data)) + data)


async def read_frame(reader: asyncio.StreamReader) -> str | None:
    """Read one length-prefixed UTF-8 string. Returns None on disconnect.

    Raises ProtocolError if the declared length exceeds MAX_FRAME_SIZE,
    preventing memory exhaustion from a misbehaving peer.
    """
    try:
        raw_len = await reader.readexactly(4)
    except asyncio.IncompleteReadError:
        return None
    frame_len = struct.unpack("!I", raw_len)[0]
    if frame_len > MAX_FRAME_SIZE:
        raise ProtocolError(
            f"Incoming frame too large: {frame_len} bytes (max {MAX_FRAME_SIZE})"
        )
    try:
        raw_data = await reader.readexactly(frame_len)
    except asyncio.IncompleteReadError:
        return None
    try:
        return raw_data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"frame is not UTF-8: {e}") from e
