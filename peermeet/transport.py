"""
Transport adapters — the seam between the session and whatever carries
its bytes.

A transport claims or dials a room token through some rendezvous service,
then reports what happens through events on a bound handler:

    channel_opened(channel)          data channel ready in both directions
    data_received(channel, payload)  one application message, uninterpreted
    channel_closed(channel)          remote left or the link dropped
    transport_error(exc)             rendezvous / link failure
    call_received(call)              inbound media call (host side)
    remote_stream_available(call, stream)

Events are always delivered from the event loop (loop.call_soon), never
synchronously from inside send() or connect, so handlers can freely call
back into the transport.

This module also provides an in-process loopback rendezvous that pairs
two transports living in the same event loop.
"""

from __future__ import annotations

import abc
import asyncio
import logging

from typing_extensions import Protocol

from .errors import ChannelNotOpen, PeerUnavailable, SignalingFailure
from .media import MediaStream

logger = logging.getLogger(__name__)


class TransportHandler(Protocol):
    def channel_opened(self, channel: "DataChannel") -> None: ...

    def data_received(self, channel: "DataChannel", payload: str) -> None: ...

    def channel_closed(self, channel: "DataChannel") -> None: ...

    def transport_error(self, exc: Exception) -> None: ...

    def call_received(self, call: "MediaCall") -> None: ...

    def remote_stream_available(self, call: "MediaCall", stream: MediaStream) -> None: ...


class DataChannel(abc.ABC):
    """One bidirectional message channel to the remote peer."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool: ...

    @abc.abstractmethod
    def send(self, payload: str) -> None:
        """Queue *payload* for delivery.  Raises ChannelNotOpen if closed."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the channel.  Safe to call more than once."""


class MediaCall(abc.ABC):
    """An audio/video call riding next to the data channel."""

    remote_stream: MediaStream | None = None

    @abc.abstractmethod
    def answer(self, stream: MediaStream) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...


class Transport(abc.ABC):
    """Base class for rendezvous + connection adapters."""

    supports_media = False
    # Largest payload one send() can carry, or None when unbounded
    max_payload_size: int | None = None

    def __init__(self) -> None:
        self._handler: TransportHandler | None = None
        self._closed = False

    def bind(self, handler: TransportHandler) -> None:
        self._handler = handler

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def connect_as_host(self, token: str) -> None:
        """Claim *token* and start accepting inbound connections.

        Inbound channels are reported through channel_opened.
        Raises SignalingFailure if the token cannot be claimed.
        """

    @abc.abstractmethod
    async def connect_as_joiner(self, token: str) -> DataChannel:
        """Dial the host listening on *token*.

        The returned channel is reported through channel_opened once usable.
        Raises PeerUnavailable when nobody listens on the token.
        """

    async def open_media_call(self, token: str, stream: MediaStream) -> MediaCall:
        raise SignalingFailure(f"{type(self).__name__} does not carry media")

    @abc.abstractmethod
    def close(self) -> None:
        """Release the token, close every channel and stop emitting events."""

    # ------------------------------------------------------------------
    # Event delivery
    # ------------------------------------------------------------------

    def _emit(self, event: str, *args) -> None:
        asyncio.get_running_loop().call_soon(self._dispatch, event, args)

    def _dispatch(self, event: str, args: tuple) -> None:
        if self._closed or self._handler is None:
            return
        getattr(self._handler, event)(*args)


# ==============================================================================
# Loopback rendezvous
# ==============================================================================


class LoopbackRendezvous:
    """In-memory rendezvous: maps room tokens to the hosting transport.

    Set *online* to False to simulate an unreachable signaling service.
    """

    def __init__(self, online: bool = True):
        self.online = online
        self._hosts: dict[str, LoopbackTransport] = {}

    def _check_online(self) -> None:
        if not self.online:
            raise SignalingFailure("Rendezvous service is unreachable")

    def register(self, token: str, transport: "LoopbackTransport") -> None:
        self._check_online()
        current = self._hosts.get(token)
        if current is not None and current is not transport:
            raise SignalingFailure(f"Room token {token!r} is already taken")
        self._hosts[token] = transport

    def unregister(self, token: str, transport: "LoopbackTransport") -> None:
        if self._hosts.get(token) is transport:
            del self._hosts[token]

    def lookup(self, token: str) -> "LoopbackTransport":
        self._check_online()
        host = self._hosts.get(token)
        if host is None or host.closed:
            raise PeerUnavailable(f"No host is waiting on {token!r}")
        return host

    def new_transport(self) -> "LoopbackTransport":
        return LoopbackTransport(self)


class LoopbackChannel(DataChannel):
    def __init__(self, owner: "LoopbackTransport"):
        self._owner = owner
        self._peer: LoopbackChannel | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def send(self, payload: str) -> None:
        if not self._open or self._peer is None:
            raise ChannelNotOpen("Loopback channel is closed")
        peer = self._peer
        peer._owner._emit("data_received", peer, payload)

    def close(self) -> None:
        if not self._open:
            return
        for end in (self, self._peer):
            end._open = False
            end._owner._channels.discard(end)
            end._owner._emit("channel_closed", end)


class LoopbackCall(MediaCall):
    def __init__(self, owner: "LoopbackTransport", local_stream: MediaStream | None):
        self._owner = owner
        self._peer: LoopbackCall | None = None
        self.local_stream = local_stream
        self.remote_stream = None
        self.closed = False

    def answer(self, stream: MediaStream) -> None:
        caller = self._peer
        if self.closed or caller is None:
            return
        self.local_stream = stream
        self.remote_stream = caller.local_stream
        caller.remote_stream = stream
        self._owner._emit("remote_stream_available", self, caller.local_stream)
        caller._owner._emit("remote_stream_available", caller, stream)

    def close(self) -> None:
        for end in (self, self._peer):
            if end is not None:
                end.closed = True
                end.remote_stream = None


class LoopbackTransport(Transport):
    """Transport that pairs with another one through a LoopbackRendezvous."""

    supports_media = True

    def __init__(self, rendezvous: LoopbackRendezvous):
        super().__init__()
        self.rendezvous = rendezvous
        self.token: str | None = None
        self._channels: set[LoopbackChannel] = set()
        self._calls: list[LoopbackCall] = []

    async def connect_as_host(self, token: str) -> None:
        self.rendezvous.register(token, self)
        self.token = token
        logger.debug("Loopback host registered %r", token)

    async def connect_as_joiner(self, token: str) -> DataChannel:
        host = self.rendezvous.lookup(token)
        mine = LoopbackChannel(self)
        theirs = LoopbackChannel(host)
        mine._peer, theirs._peer = theirs, mine
        mine._open = theirs._open = True
        self._channels.add(mine)
        host._channels.add(theirs)
        host._emit("channel_opened", theirs)
        self._emit("channel_opened", mine)
        return mine

    async def open_media_call(self, token: str, stream: MediaStream) -> MediaCall:
        host = self.rendezvous.lookup(token)
        outgoing = LoopbackCall(self, stream)
        incoming = LoopbackCall(host, None)
        outgoing._peer, incoming._peer = incoming, outgoing
        self._calls.append(outgoing)
        host._calls.append(incoming)
        host._emit("call_received", incoming)
        return outgoing

    def close(self) -> None:
        if self._closed:
            return
        for channel in list(self._channels):
            channel.close()
        for call in self._calls:
            call.close()
        if self.token is not None:
            self.rendezvous.unregister(self.token, self)
        self._closed = True
