"""
A two-party session: one room token, one data channel, at most one call.

Lifecycle
---------
    connecting ──> waiting ──> connected ──> disconnected
        │             │
        │             └──> error
        ├──> connected          (joiner, and a host whose peer arrives fast)
        └──> error

``waiting`` only exists for the host: the token is claimed and nobody has
dialled in yet.  ``disconnected`` and ``error`` are terminal; recovering
means building a new Session.

Every method runs on the event loop that owns the session.  Transport
events arrive through the TransportHandler methods below and are handled
one at a time, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
from dataclasses import dataclass
from typing import Any

from typing_extensions import Callable

from .config import FILE_CHUNK_SIZE, MAX_FILE_SIZE
from .errors import (
    ChannelNotOpen,
    FileTooLarge,
    PeerUnavailable,
    ProtocolError,
    SessionError,
)
from .media import MediaDevices, MediaStream
from .models import (
    ChatEntry,
    ConnectionStatus,
    FileTransferRecord,
    Participant,
    Role,
    new_id,
    now_ms,
)
from .protocol import (
    ChatMessage,
    FileChunkMessage,
    FileEndMessage,
    FileMetaMessage,
    PresenceMessage,
    WireMessage,
    decode_message,
    encode_message,
    max_chunk_size,
)
from .transfers import TransferTable, format_size, pump_file
from .transport import DataChannel, MediaCall, Transport

logger = logging.getLogger(__name__)

S = ConnectionStatus

_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    S.CONNECTING: frozenset({S.WAITING, S.CONNECTED, S.ERROR}),
    S.WAITING: frozenset({S.CONNECTED, S.ERROR}),
    S.CONNECTED: frozenset({S.DISCONNECTED}),
    S.DISCONNECTED: frozenset(),
    S.ERROR: frozenset(),
}


def allowed_transitions(status: ConnectionStatus) -> frozenset[ConnectionStatus]:
    return _TRANSITIONS[status]


@dataclass(frozen=True)
class SessionEvent:
    """Notification handed to subscribers.

    kind is one of: status, presence, chat, transfer, remote-stream, media.
    """

    kind: str
    payload: Any = None


Listener = Callable[[SessionEvent], None]


class Session:
    """Owns every piece of mutable state for one meeting."""

    def __init__(
        self,
        local_user: Participant,
        room_token: str,
        role: Role,
        transport: Transport,
        devices: MediaDevices,
        chunk_size: int = FILE_CHUNK_SIZE,
        max_file_size: int = MAX_FILE_SIZE,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
        limit = transport.max_payload_size
        if limit is not None and chunk_size > max_chunk_size(limit):
            raise ValueError(
                f"chunk_size {chunk_size} does not fit the transport; "
                f"the largest is {max_chunk_size(limit)}"
            )
        self.local_user = local_user
        self.room_token = room_token
        self.role = Role(role)
        self.transport = transport
        self.devices = devices
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size

        self.status = ConnectionStatus.CONNECTING
        self.error: SessionError | None = None
        self.peer_user: Participant | None = None
        self.messages: list[ChatEntry] = []
        self.transfers = TransferTable()

        self.local_stream: MediaStream | None = None
        self.remote_stream: MediaStream | None = None
        self.muted = False
        self.camera_off = False

        self._channel: DataChannel | None = None
        self._call: MediaCall | None = None
        self._pumps: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []
        self._status_event = asyncio.Event()
        self._started = False
        self._left = False

    def __repr__(self) -> str:
        return (
            f"<Session {self.room_token!r} {self.role.value} "
            f"{self.status.value} as {self.local_user.display_name!r}>"
        )

    @property
    def is_host(self) -> bool:
        return self.role is Role.HOST

    @property
    def connected(self) -> bool:
        return self.status is S.CONNECTED

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Listener:
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, kind: str, payload: Any = None) -> None:
        event = SessionEvent(kind, payload)
        for listener in list(self._listeners):
            listener(event)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new: ConnectionStatus, force: bool = False) -> bool:
        """Move to *new* if the lifecycle allows it.

        *force* skips the table for teardown and transport errors, but a
        terminal status is never left.
        """
        old = self.status
        if old.is_terminal:
            logger.debug("Ignoring %s -> %s: session already ended", old.value, new.value)
            return False
        if not force and new not in _TRANSITIONS[old]:
            logger.debug("Ignoring illegal transition %s -> %s", old.value, new.value)
            return False
        self.status = new
        logger.info("Session %s: %s -> %s", self.room_token, old.value, new.value)
        self._status_event.set()
        self._status_event = asyncio.Event()
        self._notify("status", new)
        return True

    def _fail(self, exc: SessionError) -> None:
        self.error = exc
        logger.error("Session %s failed: %s (%s)", self.room_token, exc, exc.hint)
        self._transition(S.ERROR, force=True)

    async def wait_for(self, *statuses: ConnectionStatus) -> ConnectionStatus:
        """Block until the session reaches one of *statuses* (or any terminal one)."""
        while self.status not in statuses and not self.status.is_terminal:
            await self._status_event.wait()
        return self.status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ConnectionStatus:
        """Acquire local media and rendezvous with the peer.

        Failures do not raise: they put the session in ``error`` with the
        exception in ``self.error``.
        """
        if self._started:
            raise RuntimeError("Session already started")
        self._started = True

        try:
            stream = await self.devices.acquire_local_stream(video=True, audio=True)
        except SessionError as e:
            self._fail(e)
            return self.status
        if self._left:
            stream.stop()
            return self.status
        self.local_stream = stream
        self._notify("media", stream)

        self.transport.bind(self)
        try:
            if self.is_host:
                await self.transport.connect_as_host(self.room_token)
                if not self._left:
                    self._transition(S.WAITING)
            else:
                channel = await self.transport.connect_as_joiner(self.room_token)
                if self._left:
                    channel.close()
                    return self.status
                self._channel = self._channel or channel
                if self.transport.supports_media:
                    await self._place_call()
        except SessionError as e:
            self._fail(e)
        return self.status

    async def _place_call(self) -> None:
        try:
            call = await self.transport.open_media_call(self.room_token, self.local_stream)
        except SessionError as e:
            logger.warning("Media call to %s failed: %s", self.room_token, e)
            return
        if self._left:
            call.close()
            return
        self._call = call

    def leave(self) -> None:
        """Tear the session down.  Safe to call any number of times.

        Order: media call, data channel, local devices, transport, status.
        """
        if self._left:
            return
        self._left = True
        if self._call is not None:
            self._call.close()
        if self._channel is not None:
            self._channel.close()
        if self.local_stream is not None:
            self.local_stream.stop()
        self.transport.close()
        self.remote_stream = None
        self._transition(S.DISCONNECTED, force=True)

    async def drain(self) -> None:
        """Wait until every outgoing file has been fully queued or abandoned."""
        while self._pumps:
            await asyncio.gather(*list(self._pumps))

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------

    def channel_opened(self, channel: DataChannel) -> None:
        if not channel.is_open:
            return
        if self._channel is None:
            self._channel = channel
        elif channel is not self._channel:
            logger.warning("Rejecting extra connection on %s", self.room_token)
            channel.close()
            return
        if not self._transition(S.CONNECTED):
            return
        self._send(PresenceMessage(self.local_user))

    def channel_closed(self, channel: DataChannel) -> None:
        if channel is not self._channel:
            return
        self.remote_stream = None
        if self.status is S.CONNECTED:
            self._transition(S.DISCONNECTED)
        elif not self.status.is_terminal:
            # Closed before it ever opened: the host turned us away.
            self._fail(PeerUnavailable("The host closed the connection; the room may be full"))

    def data_received(self, channel: DataChannel, payload: str) -> None:
        if channel is not self._channel:
            return
        try:
            message = decode_message(payload)
        except ProtocolError as e:
            logger.warning("Dropping malformed message: %s", e)
            return
        if message is not None:
            self._handle_message(message)

    def transport_error(self, exc: Exception) -> None:
        if not isinstance(exc, SessionError):
            exc = SessionError(str(exc))
        self._fail(exc)

    def call_received(self, call: MediaCall) -> None:
        if self._call is not None or self._left:
            logger.warning("Rejecting extra media call on %s", self.room_token)
            call.close()
            return
        self._call = call
        if self.local_stream is not None:
            call.answer(self.local_stream)

    def remote_stream_available(self, call: MediaCall, stream: MediaStream) -> None:
        if call is not self._call:
            return
        self.remote_stream = stream
        self._notify("remote-stream", stream)

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    def _handle_message(self, message: WireMessage) -> None:
        if isinstance(message, ChatMessage):
            self.messages.append(message.entry)
            self._notify("chat", message.entry)
        elif isinstance(message, PresenceMessage):
            self.peer_user = message.user
            logger.info("Peer is %s", message.user.display_name)
            self._notify("presence", message.user)
        elif isinstance(message, FileMetaMessage):
            record = self.transfers.on_meta(message)
            logger.info(
                "Receiving %s (%s) from %s",
                record.file_name,
                format_size(record.file_size),
                record.sender.display_name,
            )
            self._notify("transfer", record)
        elif isinstance(message, FileChunkMessage):
            record = self.transfers.on_chunk(message)
            if record is not None:
                self._notify("transfer", record)
        elif isinstance(message, FileEndMessage):
            record = self.transfers.on_end(message)
            if record is not None:
                self._notify("transfer", record)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _send(self, message: WireMessage) -> None:
        channel = self._channel
        if channel is None or not channel.is_open:
            raise ChannelNotOpen("No open data channel")
        channel.send(encode_message(message))

    def send_chat(self, text: str) -> ChatEntry:
        """Send a chat line and append it to the local log."""
        entry = ChatEntry(
            id=new_id(), sender=self.local_user, content=text, sent_at=now_ms()
        )
        self._send(ChatMessage(entry))
        self.messages.append(entry)
        self._notify("chat", entry)
        return entry

    def send_file(self, path: str, mime_type: str | None = None) -> FileTransferRecord:
        """Start sending the file at *path*.

        The whole file is read before anything is announced, so a failing
        read raises OSError and leaves no record behind.  Chunks are sent in
        the background; await drain() to wait for them.
        """
        size = os.path.getsize(path)
        self._check_size(os.path.basename(path), size)
        with open(path, "rb") as f:
            data = f.read()
        if mime_type is None:
            mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        return self.send_bytes(os.path.basename(path), data, mime_type)

    def send_bytes(
        self, file_name: str, data: bytes, mime_type: str = "application/octet-stream"
    ) -> FileTransferRecord:
        self._check_size(file_name, len(data))
        meta = FileMetaMessage(
            file_id=new_id(),
            file_name=file_name,
            file_size=len(data),
            mime_type=mime_type,
            sender=self.local_user,
        )
        self._send(meta)
        record = self.transfers.register_outgoing(meta)
        logger.info("Sending %s (%s)", file_name, format_size(len(data)))
        self._notify("transfer", record)

        task = asyncio.create_task(
            pump_file(
                self._send,
                record,
                data,
                self.chunk_size,
                progress_callback=lambda r: self._notify("transfer", r),
            )
        )
        self._pumps.add(task)
        task.add_done_callback(self._pumps.discard)
        return record

    def _check_size(self, file_name: str, size: int) -> None:
        if size > self.max_file_size:
            raise FileTooLarge(
                f"{file_name} is {format_size(size)}; "
                f"the maximum is {format_size(self.max_file_size)}"
            )

    # ------------------------------------------------------------------
    # Local media controls
    # ------------------------------------------------------------------

    def toggle_mute(self) -> bool:
        """Flip the first audio track.  Returns True when now muted."""
        tracks = self.local_stream.audio_tracks() if self.local_stream else []
        if tracks:
            tracks[0].enabled = not tracks[0].enabled
            self.muted = not tracks[0].enabled
            self._notify("media", self.local_stream)
        return self.muted

    def toggle_camera(self) -> bool:
        """Flip the first video track.  Returns True when the camera is now off."""
        tracks = self.local_stream.video_tracks() if self.local_stream else []
        if tracks:
            tracks[0].enabled = not tracks[0].enabled
            self.camera_off = not tracks[0].enabled
            self._notify("media", self.local_stream)
        return self.camera_off
