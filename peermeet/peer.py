"""
PeerMeet — two-person rooms with chat and file transfer.

Main entry point.  Builds a session on the LAN transport and runs either
the TUI (default) or a line-oriented CLI.

Usage:
    peermeet --name Ada --host               # create a room, print its token
    peermeet --name Bob --join swift-fox-482 # join it from another machine
    peermeet --name Ada --host --cli         # CLI instead of the TUI
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from .config import DOWNLOADS_DIR, FILE_CHUNK_SIZE, MAX_FRAME_SIZE, TCP_PORT
from .errors import SessionError
from .lan import LanTransport
from .media import HeadlessDevices
from .models import ConnectionStatus, Participant, Role
from .protocol import max_chunk_size
from .rooms import generate_room_name, is_valid_token
from .session import Session, SessionEvent
from .transfers import OUTGOING, format_size


def _print_help() -> None:
    print("""
  PeerMeet Commands
  ────────────────────────────────────────────────────
  <text>                 Send a chat message
  /send <path>           Send a file to the other person
  /files                 List transfers and their progress
  /save                  Save received files to the downloads folder
  /mute, /camera         Toggle microphone / camera
  /status                Show the connection status
  /help                  Show this help message
  /quit                  Leave the room
  ────────────────────────────────────────────────────
""")


def _print_event(session: Session, event: SessionEvent) -> None:
    if event.kind == "status":
        print(f"\n  [status] {event.payload.value}")
        if event.payload is ConnectionStatus.ERROR and session.error:
            print(f"  [!] {session.error.hint}")
        elif event.payload is ConnectionStatus.WAITING:
            print(f"  Waiting in room {session.room_token}. Share the token to invite someone.")
    elif event.kind == "presence":
        print(f"\n  {event.payload.display_name} joined.")
    elif event.kind == "chat":
        entry = event.payload
        if entry.sender.id != session.local_user.id:
            print(f"\n  {entry.sender.display_name}: {entry.content}")
    elif event.kind == "transfer":
        record = event.payload
        if record.failed:
            print(f"\n  [!] {record.file_name}: {record.error}")
        elif record.complete and record.direction != OUTGOING:
            print(f"\n  Received {record.file_name} ({format_size(record.file_size)}). /save to keep it.")


def _list_transfers(session: Session) -> None:
    records = list(session.transfers)
    if not records:
        print("  (no transfers)")
        return
    print(f"  {'File':<32} {'Size':>10} {'Dir':>9} {'Progress':>9}")
    print(f"  {'-' * 32} {'-' * 10} {'-' * 9} {'-' * 9}")
    for r in records:
        state = r.error or f"{r.progress * 100:.0f}%"
        print(f"  {r.file_name:<32} {format_size(r.file_size):>10} {r.direction[:3]:>9} {state:>9}")


async def _cli_loop(session: Session, downloads_dir: str) -> None:
    session.subscribe(lambda event: _print_event(session, event))
    try:
        await session.start()
        await _read_commands(session, downloads_dir)
        await session.drain()
    finally:
        session.leave()
    print("  Goodbye.")


async def _read_commands(session: Session, downloads_dir: str) -> None:
    saved: set[str] = set()

    while not session.status.is_terminal:
        try:
            raw = (await asyncio.to_thread(input, "peermeet> ")).strip()
        except EOFError:
            break
        if not raw:
            continue

        if not raw.startswith("/"):
            try:
                session.send_chat(raw)
            except SessionError as e:
                print(f"  [!] {e.hint}")
            continue

        cmd, _, arg = raw[1:].partition(" ")
        cmd = cmd.lower()
        arg = arg.strip()

        if cmd in ("quit", "exit"):
            break
        elif cmd == "help":
            _print_help()
        elif cmd == "status":
            peer = session.peer_user.display_name if session.peer_user else "nobody"
            print(f"  {session.status.value} in {session.room_token} with {peer}")
        elif cmd == "files":
            _list_transfers(session)
        elif cmd == "send":
            if not arg:
                print("  Usage: /send <path>")
                continue
            try:
                record = session.send_file(os.path.expanduser(arg))
            except SessionError as e:
                print(f"  [!] {e}")
                continue
            except OSError as e:
                print(f"  [!] Cannot read {arg}: {e.strerror}")
                continue
            print(f"  Sending {record.file_name} ({format_size(record.file_size)})")
        elif cmd == "save":
            for r in session.transfers:
                if r.direction == OUTGOING or not r.complete or r.file_id in saved:
                    continue
                path = r.artifact.save(downloads_dir)
                saved.add(r.file_id)
                print(f"  Saved {r.file_name} -> {path}")
        elif cmd == "mute":
            print("  Microphone muted." if session.toggle_mute() else "  Microphone on.")
        elif cmd == "camera":
            print("  Camera off." if session.toggle_camera() else "  Camera on.")
        else:
            print(f"  Unknown command: /{cmd}  (type /help for commands)")


def chunk_size_arg(value: str) -> int:
    """argparse type for --chunk-size: a positive size that fits one LAN frame."""
    try:
        size = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if size < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {size}")
    largest = max_chunk_size(MAX_FRAME_SIZE)
    if size > largest:
        raise argparse.ArgumentTypeError(f"must be at most {largest}, got {size}")
    return size


def build_session(args: argparse.Namespace) -> Session:
    role = Role.HOST if args.join is None else Role.JOINER
    token = args.join or args.room or generate_room_name()
    if not is_valid_token(token):
        raise SystemExit(f"Invalid room token: {token!r}")
    return Session(
        local_user=Participant.create(args.name),
        room_token=token,
        role=role,
        transport=LanTransport(port=args.port if role is Role.HOST else TCP_PORT),
        devices=HeadlessDevices(),
        chunk_size=args.chunk_size,
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="PeerMeet two-person rooms")
    parser.add_argument("--name", required=True, help="Display name shown to the other person")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--host", action="store_true", help="Create a room (default when --join is absent)"
    )
    group.add_argument("--join", metavar="TOKEN", help="Join the room with this token")
    parser.add_argument("--room", metavar="TOKEN", help="Host under this token instead of a random one")
    parser.add_argument("--port", type=int, default=TCP_PORT, help="TCP port to host on")
    parser.add_argument(
        "--chunk-size", type=chunk_size_arg, default=FILE_CHUNK_SIZE, help="Bytes per file chunk"
    )
    parser.add_argument("--downloads", default=DOWNLOADS_DIR, help="Where received files are saved")
    parser.add_argument("--cli", action="store_true", help="Launch CLI mode instead of the TUI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    args = parser.parse_args(argv)

    session = build_session(args)

    # ── TUI mode (default) ──
    if not args.cli:
        from .tui import run_tui

        run_tui(session, args.downloads)
        return

    # ── CLI mode ──
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    print(f"  PeerMeet  [{session.role.value} room={session.room_token}  name={args.name}]")
    print("  Type /help for available commands.\n")
    try:
        asyncio.run(_cli_loop(session, args.downloads))
    except KeyboardInterrupt:
        print("\n  Interrupted. Shutting down...")


if __name__ == "__main__":
    main()
