"""
PeerMeet - two-person rooms with chat and file transfer

A host claims a room token, one joiner dials it, and the two exchange
chat lines and files over a single data channel.
"""

__version__ = "0.3.0"

from .config import FILE_CHUNK_SIZE, MAX_FILE_SIZE
from .errors import (
    ChannelNotOpen,
    FileTooLarge,
    FrameTooLarge,
    MediaAcquisitionFailure,
    PeerUnavailable,
    ProtocolError,
    SessionError,
    SignalingFailure,
)
from .lan import LanTransport
from .media import HeadlessDevices, MediaStream
from .models import (
    Artifact,
    ChatEntry,
    ConnectionStatus,
    FileTransferRecord,
    Participant,
    Role,
)
from .protocol import decode_message, encode_message
from .rooms import generate_room_name
from .session import Session, SessionEvent
from .transfers import format_size
from .transport import LoopbackRendezvous, Transport

__all__ = [
    "FILE_CHUNK_SIZE",
    "MAX_FILE_SIZE",
    "SessionError",
    "MediaAcquisitionFailure",
    "SignalingFailure",
    "PeerUnavailable",
    "ChannelNotOpen",
    "FileTooLarge",
    "FrameTooLarge",
    "ProtocolError",
    "Transport",
    "LoopbackRendezvous",
    "LanTransport",
    "HeadlessDevices",
    "MediaStream",
    "Participant",
    "ChatEntry",
    "FileTransferRecord",
    "Artifact",
    "ConnectionStatus",
    "Role",
    "Session",
    "SessionEvent",
    "encode_message",
    "decode_message",
    "generate_room_name",
    "format_size",
]
