"""
Tests for lan.py and discovery.py — TCP sessions on localhost and beacon
parsing.  No UDP traffic is sent: the directory runs with networked=False
and rooms are fed to it directly.
"""

import asyncio
import time

import pytest

from peermeet.config import MAX_FRAME_SIZE, ROOM_TIMEOUT
from peermeet.discovery import RoomDirectory, make_beacon
from peermeet.errors import FrameTooLarge, PeerUnavailable
from peermeet.lan import LanTransport
from peermeet.media import HeadlessDevices
from peermeet.models import ConnectionStatus, Participant, Role
from peermeet.protocol import max_chunk_size
from peermeet.session import Session

S = ConnectionStatus
TOKEN = "brave-panda-207"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_lan_session(directory, name, role, token=TOKEN, **kwargs):
    transport = LanTransport(
        directory,
        port=0,
        bind_host="127.0.0.1",
        lookup_timeout=kwargs.pop("lookup_timeout", 2.0),
    )
    return Session(
        Participant.create(name),
        token,
        role,
        transport,
        HeadlessDevices(),
        **kwargs,
    )


async def until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# RoomDirectory
# ---------------------------------------------------------------------------


class TestRoomDirectory:
    def test_beacon_roundtrip(self):
        directory = RoomDirectory(networked=False)
        directory._handle_beacon(make_beacon(TOKEN, "laptop", 5100), "192.168.1.20")
        assert directory.lookup(TOKEN) == ("192.168.1.20", 5100)
        rooms = directory.get_rooms()
        assert rooms[0]["hostname"] == "laptop"

    def test_ignores_malformed_beacons(self):
        directory = RoomDirectory(networked=False)
        directory._handle_beacon("HELLO:there", "10.0.0.1")
        directory._handle_beacon(f"PEERMEET_ROOM:{TOKEN}:box:notaport", "10.0.0.1")
        directory._handle_beacon("PEERMEET_ROOM::box:5100", "10.0.0.1")
        directory._handle_beacon(f"OTHER_APP:{TOKEN}:box:5100", "10.0.0.1")
        assert directory.get_rooms() == []

    def test_rooms_expire(self):
        directory = RoomDirectory(networked=False)
        directory._handle_beacon(make_beacon(TOKEN, "box", 5100), "10.0.0.1")
        directory._rooms[TOKEN]["last_seen"] -= ROOM_TIMEOUT + 1
        assert directory.lookup(TOKEN) is None
        assert directory.get_rooms() == []

    def test_local_rooms_resolve_to_loopback(self):
        directory = RoomDirectory(networked=False)
        directory.announce(TOKEN, 6123)
        assert directory.lookup(TOKEN) == ("127.0.0.1", 6123)
        directory.withdraw(TOKEN)
        assert directory.lookup(TOKEN) is None

    def test_resolve_times_out(self):
        directory = RoomDirectory(networked=False)
        with pytest.raises(PeerUnavailable):
            asyncio.run(directory.resolve("quiet-owl-100", timeout=0.05))


# ---------------------------------------------------------------------------
# Sessions over TCP
# ---------------------------------------------------------------------------


class TestLanSession:
    def test_connect_chat_and_file(self):
        async def run():
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST, chunk_size=4096)
            joiner = make_lan_session(directory, "Bob", Role.JOINER, chunk_size=4096)

            assert await host.start() is S.WAITING
            await joiner.start()
            await until(lambda: host.peer_user is not None and joiner.peer_user is not None)
            assert host.status is S.CONNECTED
            assert joiner.status is S.CONNECTED
            assert joiner.peer_user == host.local_user
            assert joiner.remote_stream is None

            joiner.send_chat("hello over tcp")
            await until(lambda: len(host.messages) == 1)
            assert host.messages[0].content == "hello over tcp"

            data = bytes(range(256)) * 40
            sent = host.send_bytes("pattern.bin", data)
            await host.drain()
            await until(lambda: joiner.transfers.get(sent.file_id) is not None
                        and joiner.transfers.get(sent.file_id).complete)
            received = joiner.transfers.get(sent.file_id)
            assert [len(c) for c in received.chunks] == [4096, 4096, 2048]
            assert received.artifact.data == data

            joiner.leave()
            await until(lambda: host.status is S.DISCONNECTED)
            host.leave()

        asyncio.run(run())

    def test_room_is_withdrawn_once_taken(self):
        async def run():
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST)
            joiner = make_lan_session(directory, "Bob", Role.JOINER)
            await host.start()
            await joiner.start()
            await until(lambda: host.status is S.CONNECTED)
            assert directory.lookup(TOKEN) is None

            late = make_lan_session(directory, "Eve", Role.JOINER, lookup_timeout=0.1)
            assert await late.start() is S.ERROR
            assert isinstance(late.error, PeerUnavailable)
            assert host.status is S.CONNECTED

            joiner.leave()
            host.leave()

        asyncio.run(run())

    def test_unknown_room(self):
        async def run():
            directory = RoomDirectory(networked=False)
            joiner = make_lan_session(directory, "Bob", Role.JOINER, lookup_timeout=0.1)
            assert await joiner.start() is S.ERROR
            assert isinstance(joiner.error, PeerUnavailable)

        asyncio.run(run())

    def test_host_leaving_releases_the_token(self):
        async def run():
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST)
            await host.start()
            assert directory.lookup(TOKEN) is not None
            host.leave()
            assert directory.lookup(TOKEN) is None
            assert host.status is S.DISCONNECTED

        asyncio.run(run())

    def test_stale_beacon_for_a_full_room(self):
        async def run():
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST)
            joiner = make_lan_session(directory, "Bob", Role.JOINER)
            await host.start()
            await joiner.start()
            await until(lambda: host.status is S.CONNECTED and joiner.status is S.CONNECTED)

            # A second machine still remembers the beacon from before the room filled.
            elsewhere = RoomDirectory(networked=False)
            elsewhere._handle_beacon(
                make_beacon(TOKEN, "laptop", host.transport.port), "127.0.0.1"
            )
            late = make_lan_session(elsewhere, "Eve", Role.JOINER)
            statuses = []
            late.subscribe(lambda e: statuses.append(e.payload) if e.kind == "status" else None)

            await late.start()
            await until(lambda: late.status.is_terminal)
            assert late.status is S.ERROR
            assert isinstance(late.error, PeerUnavailable)
            assert S.CONNECTED not in statuses
            assert host.status is S.CONNECTED
            assert joiner.status is S.CONNECTED

            joiner.leave()
            host.leave()

        asyncio.run(run())


# ---------------------------------------------------------------------------
# Frame limits
# ---------------------------------------------------------------------------


class TestFrameLimits:
    def test_largest_chunk_size_round_trips(self):
        largest = max_chunk_size(MAX_FRAME_SIZE)

        async def run():
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST, chunk_size=largest)
            joiner = make_lan_session(directory, "Bob", Role.JOINER, chunk_size=largest)
            await host.start()
            await joiner.start()
            await until(lambda: joiner.peer_user is not None)

            # 0xff is the longest byte value on the wire
            data = b"\xff" * (largest + 100)
            sent = host.send_bytes("worst.bin", data)
            await host.drain()
            await until(lambda: joiner.transfers.get(sent.file_id) is not None
                        and joiner.transfers.get(sent.file_id).complete, timeout=10.0)

            received = joiner.transfers.get(sent.file_id)
            assert [len(c) for c in received.chunks] == [largest, 100]
            assert received.artifact.data == data
            assert joiner.status is S.CONNECTED
            assert sent.complete

            joiner.leave()
            host.leave()

        asyncio.run(run())

    def test_chunk_size_above_the_frame_limit_is_refused(self):
        largest = max_chunk_size(MAX_FRAME_SIZE)
        with pytest.raises(ValueError):
            make_lan_session(RoomDirectory(networked=False), "Ada", Role.HOST,
                             chunk_size=largest + 1)

    def test_oversized_chunk_abandons_instead_of_breaking_the_peer(self):
        async def run():
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST)
            joiner = make_lan_session(directory, "Bob", Role.JOINER)
            await host.start()
            await joiner.start()
            await until(lambda: joiner.peer_user is not None)

            host.chunk_size = 400_000
            sent = host.send_bytes("big.bin", b"\xff" * 400_000)
            await host.drain()
            assert sent.failed
            assert not sent.complete

            host.send_chat("still here")
            await until(lambda: len(joiner.messages) == 1)
            assert joiner.status is S.CONNECTED
            assert not joiner.transfers.get(sent.file_id).complete

            joiner.leave()
            host.leave()

        asyncio.run(run())

    def test_channel_refuses_oversized_payload(self):
        async def run():
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST)
            joiner = make_lan_session(directory, "Bob", Role.JOINER)
            await host.start()
            await joiner.start()
            await until(lambda: joiner.status is S.CONNECTED)
            channel = joiner._channel
            with pytest.raises(FrameTooLarge):
                channel.send("x" * (MAX_FRAME_SIZE + 1))
            assert channel.is_open

            joiner.leave()
            host.leave()

        asyncio.run(run())


# ---------------------------------------------------------------------------
# Leaving while the host is still coming up
# ---------------------------------------------------------------------------


class SlowDirectory(RoomDirectory):
    """Directory whose start() blocks until released."""

    def __init__(self):
        super().__init__(networked=False)
        self.release = asyncio.Event()

    async def start(self) -> None:
        await self.release.wait()
        await super().start()


class TestLeaveDuringHostStart:
    def test_while_directory_starts(self):
        async def run():
            directory = SlowDirectory()
            host = make_lan_session(directory, "Ada", Role.HOST)
            task = asyncio.create_task(host.start())
            await until(lambda: host.transport._server is not None)

            host.leave()
            directory.release.set()
            await task

            assert host.status is S.DISCONNECTED
            assert directory.lookup(TOKEN) is None
            assert not host.transport._server.is_serving()

        asyncio.run(run())

    def test_while_listener_starts(self, monkeypatch):
        servers = []

        async def run():
            reached = asyncio.Event()
            release = asyncio.Event()
            real_start_server = asyncio.start_server

            async def slow_start_server(*args, **kwargs):
                server = await real_start_server(*args, **kwargs)
                servers.append(server)
                reached.set()
                await release.wait()
                return server

            monkeypatch.setattr(asyncio, "start_server", slow_start_server)
            directory = RoomDirectory(networked=False)
            host = make_lan_session(directory, "Ada", Role.HOST)
            task = asyncio.create_task(host.start())
            await reached.wait()

            host.leave()
            release.set()
            await task

            assert host.status is S.DISCONNECTED
            assert directory.lookup(TOKEN) is None
            assert not servers[0].is_serving()

        asyncio.run(run())
