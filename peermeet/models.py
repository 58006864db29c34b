"""
Data model shared by the session, the codec and the transfer engine.
"""

from __future__ import annotations

import os
import random
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .config import COLORS, ID_LENGTH


def new_id() -> str:
    """Short random id used for participants, chat entries and files."""
    return uuid.uuid4().hex[:ID_LENGTH]


def now_ms() -> int:
    return int(time.time() * 1000)


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    WAITING = "waiting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionStatus.DISCONNECTED, ConnectionStatus.ERROR)


class Role(str, Enum):
    HOST = "host"
    JOINER = "joiner"


@dataclass(frozen=True)
class Participant:
    """One side of the session."""

    id: str
    display_name: str
    color_tag: str

    @classmethod
    def create(cls, display_name: str) -> "Participant":
        return cls(
            id=new_id(),
            display_name=display_name,
            color_tag=random.choice(COLORS),
        )


@dataclass(frozen=True)
class ChatEntry:
    id: str
    sender: Participant
    content: str
    sent_at: int  # milliseconds since the epoch


# Windows reserved device names that must never be used as filenames.
_WINDOWS_RESERVED = re.compile(
    r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE
)


def safe_filename(filename: str) -> str:
    """Sanitize a filename announced by the remote side.

    - Strips directory components (prevents path traversal).
    - Removes null bytes.
    - Rejects Windows reserved device names (CON, NUL, COM1 … LPT9).
    - Falls back to "download" if the result is empty or a bare dot/dotdot.
    """
    name = os.path.basename(filename.replace("\\", "/"))
    name = name.replace("\x00", "")
    if name in ("", ".", ".."):
        return "download"
    if _WINDOWS_RESERVED.match(name):
        return "download"
    return name


@dataclass(frozen=True)
class Artifact:
    """A complete file, reassembled from chunks or taken from the source."""

    file_name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def save(self, directory: str) -> str:
        """Write the artifact into *directory* and return the path.

        An existing file of the same name is not overwritten; a numeric
        suffix is added instead.
        """
        os.makedirs(directory, exist_ok=True)
        base, ext = os.path.splitext(safe_filename(self.file_name))
        path = os.path.join(directory, base + ext)
        n = 1
        while os.path.exists(path):
            path = os.path.join(directory, f"{base} ({n}){ext}")
            n += 1
        with open(path, "wb") as f:
            f.write(self.data)
        return path


@dataclass
class FileTransferRecord:
    """Progress and payload of one file moving in either direction."""

    file_id: str
    file_name: str
    file_size: int
    mime_type: str
    sender: Participant
    direction: str = "incoming"
    received_bytes: int = 0
    chunks: list[bytes] = field(default_factory=list)
    artifact: Artifact | None = None
    # Reason an outgoing transfer was abandoned, if it was
    error: str | None = None

    @property
    def progress(self) -> float:
        if self.artifact is not None:
            return 1.0
        if self.file_size == 0:
            return 0.0
        return self.received_bytes / self.file_size

    @property
    def complete(self) -> bool:
        return self.artifact is not None

    @property
    def failed(self) -> bool:
        return self.error is not None
