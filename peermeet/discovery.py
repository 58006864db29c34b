"""
Room discovery via UDP broadcast.

A LAN host periodically broadcasts a beacon naming the room token it
waits on.  Joiners listen on the same UDP port and keep a table of known
rooms, expiring entries that haven't been heard recently.

Beacon payload format (UTF-8 string):
    PEERMEET_ROOM:<token>:<hostname>:<tcp_port>
"""

from __future__ import annotations

import asyncio
import logging
import platform
import socket
import time

import psutil

from .config import BROADCAST_INTERVAL, LOOKUP_TIMEOUT, ROOM_TIMEOUT, UDP_PORT
from .errors import PeerUnavailable, SignalingFailure

logger = logging.getLogger(__name__)

BEACON_PREFIX = "PEERMEET_ROOM"


def get_broadcast_addresses() -> list[str]:
    """Get all broadcast addresses for local interfaces."""
    broadcasts = []

    for iface, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            if addr.address.startswith("127."):
                continue
            ip_parts = addr.address.split(".")
            mask_parts = addr.netmask.split(".")
            broadcast = ".".join(
                str(int(ip_parts[i]) | (255 - int(mask_parts[i])))
                for i in range(4)
            )
            broadcasts.append(broadcast)

    return broadcasts if broadcasts else ["255.255.255.255"]


def make_beacon(token: str, hostname: str, tcp_port: int) -> str:
    return f"{BEACON_PREFIX}:{token}:{hostname}:{tcp_port}"


class _BeaconListener(asyncio.DatagramProtocol):
    def __init__(self, directory: "RoomDirectory"):
        self.directory = directory

    def datagram_received(self, data: bytes, addr) -> None:
        try:
            message = data.decode("utf-8")
        except UnicodeDecodeError:
            return
        self.directory._handle_beacon(message, addr[0])


class RoomDirectory:
    """Announces local rooms and remembers rooms announced by others.

    With *networked* False nothing touches the network: rooms announced
    through this directory are still resolvable by transports sharing it,
    which is how two sessions in one process find each other.
    """

    def __init__(self, udp_port: int = UDP_PORT, networked: bool = True):
        self.udp_port = udp_port
        self.networked = networked
        self.hostname = platform.node() or "unknown"

        self._rooms: dict[str, dict] = {}
        self._local_rooms: dict[str, int] = {}
        self._listen_transport: asyncio.DatagramTransport | None = None
        self._send_transport: asyncio.DatagramTransport | None = None
        self._beacon_task: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bind the listener and start the beacon loop.  Idempotent."""
        if self._running:
            return
        self._running = True
        if not self.networked:
            return

        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                pass
        try:
            sock.bind(("", self.udp_port))
            self._listen_transport, _ = await loop.create_datagram_endpoint(
                lambda: _BeaconListener(self), sock=sock
            )
            self._send_transport, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol,
                local_addr=("0.0.0.0", 0),
                allow_broadcast=True,
            )
        except OSError as e:
            sock.close()
            self.stop()
            raise SignalingFailure(f"Cannot open discovery port {self.udp_port}: {e}") from e

        self._beacon_task = asyncio.create_task(self._beacon_loop())

    def stop(self) -> None:
        self._running = False
        if self._beacon_task:
            self._beacon_task.cancel()
            self._beacon_task = None
        for transport in (self._listen_transport, self._send_transport):
            if transport is not None:
                transport.close()
        self._listen_transport = self._send_transport = None

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def announce(self, token: str, tcp_port: int) -> None:
        self._local_rooms[token] = tcp_port

    def withdraw(self, token: str) -> None:
        self._local_rooms.pop(token, None)

    def get_rooms(self) -> list[dict]:
        """Return the rooms heard recently (excluding expired ones)."""
        now = time.time()
        active = []
        expired = []
        for token, info in self._rooms.items():
            if now - info["last_seen"] > ROOM_TIMEOUT:
                expired.append(token)
            else:
                active.append({"token": token, **info})
        for token in expired:
            del self._rooms[token]
        return active

    def lookup(self, token: str) -> tuple[str, int] | None:
        if token in self._local_rooms:
            return "127.0.0.1", self._local_rooms[token]
        for room in self.get_rooms():
            if room["token"] == token:
                return room["ip"], room["tcp_port"]
        return None

    async def resolve(self, token: str, timeout: float = LOOKUP_TIMEOUT) -> tuple[str, int]:
        """Wait up to *timeout* seconds to hear *token* announced."""
        deadline = time.monotonic() + timeout
        while True:
            address = self.lookup(token)
            if address is not None:
                return address
            if time.monotonic() >= deadline:
                raise PeerUnavailable(f"No host announced room {token!r}")
            await asyncio.sleep(0.2)

    # ------------------------------------------------------------------
    # Beacons
    # ------------------------------------------------------------------

    async def _beacon_loop(self) -> None:
        try:
            broadcasts = get_broadcast_addresses()
        except Exception as e:
            logger.debug("Falling back to global broadcast: %s", e)
            broadcasts = ["255.255.255.255"]

        while self._running:
            for token, port in list(self._local_rooms.items()):
                data = make_beacon(token, self.hostname, port).encode("utf-8")
                for addr in broadcasts:
                    try:
                        self._send_transport.sendto(data, (addr, self.udp_port))
                    except OSError as e:
                        logger.debug("Beacon to %s failed: %s", addr, e)
            await asyncio.sleep(BROADCAST_INTERVAL)

    def _handle_beacon(self, message: str, sender_ip: str) -> None:
        """Parse a beacon message and update the known-rooms dict."""
        parts = message.split(":")
        if len(parts) != 4 or parts[0] != BEACON_PREFIX:
            return

        _, token, hostname, tcp_port_str = parts
        if not token:
            return

        try:
            tcp_port = int(tcp_port_str)
        except ValueError:
            return

        self._rooms[token] = {
            "ip": sender_ip,
            "hostname": hostname,
            "tcp_port": tcp_port,
            "last_seen": time.time(),
        }
