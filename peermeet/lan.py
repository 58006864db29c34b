"""
LAN transport — TCP data channel, UDP room beacons for rendezvous.

The host listens on a TCP port and announces its room token through a
RoomDirectory.  The joiner resolves the token to an address and dials it.
Each message travels as one length-prefixed frame (see protocol.py).

Only the first inbound connection is accepted; the room stops being
announced as soon as it is taken.  A joiner treats its channel as open
only once the host's first frame (its presence) arrives: a host that is
already taken closes the socket without a word, which the joiner reports
as PeerUnavailable.  Media is not carried over LAN.
"""

from __future__ import annotations

import asyncio
import logging

from .config import LOOKUP_TIMEOUT, MAX_FRAME_SIZE, TCP_PORT
from .discovery import RoomDirectory
from .errors import ChannelNotOpen, PeerUnavailable, ProtocolError, SignalingFailure
from .protocol import read_frame, write_frame
from .transport import DataChannel, Transport

logger = logging.getLogger(__name__)


class TcpChannel(DataChannel):
    def __init__(
        self,
        owner: "LanTransport",
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        greeted: bool = True,
    ):
        self._owner = owner
        self._reader = reader
        self._writer = writer
        self._open = True
        # False until the first frame arrives; channel_opened waits for it
        self._greeted = greeted
        self.peer_address = writer.get_extra_info("peername")

    @property
    def is_open(self) -> bool:
        return self._open

    def send(self, payload: str) -> None:
        if not self._open or self._writer.is_closing():
            raise ChannelNotOpen("TCP channel is closed")
        write_frame(self._writer, payload)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._writer.close()
        self._owner._emit("channel_closed", self)

    async def read_loop(self) -> None:
        """Forward frames to the owner until the connection ends."""
        failed = False
        try:
            while self._open:
                text = await read_frame(self._reader)
                if text is None:
                    break
                if not self._greeted:
                    self._greeted = True
                    self._owner._emit("channel_opened", self)
                self._owner._emit("data_received", self, text)
        except ProtocolError as e:
            logger.warning("Closing channel to %s: %s", self.peer_address, e)
            self._owner._emit("transport_error", e)
            failed = True
        except (ConnectionError, OSError) as e:
            logger.debug("Connection to %s lost: %s", self.peer_address, e)
        finally:
            if self._open and not self._greeted and not failed:
                logger.warning("Host at %s turned the connection away", self.peer_address)
                self._owner._emit(
                    "transport_error",
                    PeerUnavailable(
                        f"Host at {self.peer_address} closed the connection; "
                        "the room may be full"
                    ),
                )
            self.close()


class LanTransport(Transport):
    """Transport for two machines on the same broadcast domain."""

    max_payload_size = MAX_FRAME_SIZE

    def __init__(
        self,
        directory: RoomDirectory | None = None,
        port: int = TCP_PORT,
        bind_host: str = "0.0.0.0",
        lookup_timeout: float = LOOKUP_TIMEOUT,
    ):
        super().__init__()
        self._owns_directory = directory is None
        self.directory = directory or RoomDirectory()
        self.port = port
        self.bind_host = bind_host
        self.lookup_timeout = lookup_timeout
        self.token: str | None = None
        self._server: asyncio.AbstractServer | None = None
        self._channel: TcpChannel | None = None
        self._reader_task: asyncio.Task | None = None

    async def connect_as_host(self, token: str) -> None:
        try:
            server = await asyncio.start_server(
                self._on_connection, self.bind_host, self.port
            )
        except OSError as e:
            raise SignalingFailure(f"Cannot listen on port {self.port}: {e}") from e
        if self._closed:
            server.close()
            return
        self._server = server
        self.port = server.sockets[0].getsockname()[1]
        await self.directory.start()
        if self._closed:
            # close() ran while the directory was starting
            if self._owns_directory:
                self.directory.stop()
            return
        self.directory.announce(token, self.port)
        self.token = token
        logger.info("Hosting %s on TCP port %d", token, self.port)

    async def _on_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._channel is not None or self._closed:
            logger.warning(
                "Refusing connection from %s: room is taken",
                writer.get_extra_info("peername"),
            )
            writer.close()
            return
        channel = TcpChannel(self, reader, writer)
        self._channel = channel
        if self.token is not None:
            self.directory.withdraw(self.token)
        self._emit("channel_opened", channel)
        await channel.read_loop()

    async def connect_as_joiner(self, token: str) -> DataChannel:
        await self.directory.start()
        host, port = await self.directory.resolve(token, self.lookup_timeout)
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except OSError as e:
            raise PeerUnavailable(f"Host for {token!r} at {host}:{port} refused: {e}") from e
        channel = TcpChannel(self, reader, writer, greeted=False)
        self._channel = channel
        self._reader_task = asyncio.create_task(channel.read_loop())
        return channel

    def close(self) -> None:
        if self._closed:
            return
        if self._channel is not None:
            self._channel.close()
        if self._server is not None:
            self._server.close()
        if self.token is not None:
            self.directory.withdraw(self.token)
        if self._owns_directory:
            self.directory.stop()
        self._closed = True
