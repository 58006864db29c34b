"""
PeerMeet TUI — a terminal meeting room.

Built with Textual.  Video is not rendered; the sidebar shows the call
state, the main panel carries chat and file transfers.
"""

from __future__ import annotations

import os
from datetime import datetime

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import (
    Button,
    DataTable,
    Footer,
    Header,
    Input,
    Label,
    RichLog,
    Static,
)

from .config import DOWNLOADS_DIR
from .errors import SessionError
from .models import ChatEntry, ConnectionStatus, FileTransferRecord
from .rooms import format_room_name
from .session import Session, SessionEvent
from .transfers import OUTGOING, format_size

STATUS_TEXT = {
    ConnectionStatus.CONNECTING: "[#f1c40f]● Connecting...[/]",
    ConnectionStatus.WAITING: "[#5ec4ff]● Waiting for someone to join[/]",
    ConnectionStatus.CONNECTED: "[#00ff9f]● Connected[/]",
    ConnectionStatus.DISCONNECTED: "[#718ca1]● Disconnected[/]",
    ConnectionStatus.ERROR: "[#e74c3c]● Connection failed[/]",
}

CSS = """
#main-container { height: 1fr; }
#sidebar { width: 36; border-right: solid $primary-darken-2; padding: 0 1; }
#main-panel { width: 1fr; }
#chat-view { height: 1fr; }
#transfers-table { height: 12; }
.section-title { text-style: bold; color: $accent; margin-top: 1; }
#command-bar { height: 3; }
#command-input { width: 1fr; }
#dialog { width: 64; height: auto; padding: 1 2; border: thick $primary; background: $surface; }
#dialog-buttons { height: auto; margin-top: 1; }
"""


# ==============================================================================
# Modals
# ==============================================================================


class HelpScreen(ModalScreen):
    """Keyboard and command reference."""

    BINDINGS = [Binding("escape", "dismiss", "Close")]

    def compose(self) -> ComposeResult:
        with Container(id="dialog"):
            yield Label("[bold]PeerMeet commands[/]")
            yield Static(
                "Type a message and press Enter to chat.\n\n"
                "/send <path>   Send a file\n"
                "/save          Save received files\n"
                "/mute          Toggle microphone\n"
                "/camera        Toggle camera\n"
                "/quit          Leave the room\n\n"
                "F2 mute · F3 camera · F4 send file · F5 save · Ctrl+Q leave"
            )
            yield Button("Close", variant="primary", id="btn-close")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss()


class SendFileScreen(ModalScreen[str | None]):
    """Ask for the path of a file to send."""

    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def compose(self) -> ComposeResult:
        with Container(id="dialog"):
            yield Label("Send a file")
            yield Input(placeholder="/path/to/file", id="path-input")
            with Horizontal(id="dialog-buttons"):
                yield Button("Send", variant="primary", id="btn-send")
                yield Button("Cancel", id="btn-cancel")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "btn-send":
            self.dismiss(self.query_one("#path-input", Input).value.strip() or None)
        else:
            self.dismiss(None)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.dismiss(event.value.strip() or None)

    def action_cancel(self) -> None:
        self.dismiss(None)


# ==============================================================================
# Main application
# ==============================================================================


class PeerMeetApp(App):
    """Meeting room for one PeerMeet session."""

    TITLE = "PEERMEET"
    CSS = CSS
    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("f1", "show_help", "Help", show=True),
        Binding("f2", "toggle_mute", "Mute", show=True),
        Binding("f3", "toggle_camera", "Camera", show=True),
        Binding("f4", "send_file", "Send file", show=True),
        Binding("f5", "save_files", "Save", show=True),
        Binding("ctrl+q", "leave", "Leave", show=True),
    ]

    def __init__(self, session: Session, downloads_dir: str = DOWNLOADS_DIR):
        super().__init__()
        self.session = session
        self.downloads_dir = downloads_dir
        self.sub_title = format_room_name(session.room_token)
        self._saved: dict[str, str] = {}
        self._rows: set[str] = set()

    # --------------------------------------------------------------------------
    # Layout
    # --------------------------------------------------------------------------

    def compose(self) -> ComposeResult:
        yield Header()

        with Horizontal(id="main-container"):
            with Vertical(id="sidebar"):
                yield Label("ROOM", classes="section-title")
                yield Static(self.session.room_token, id="room-token")
                yield Static(STATUS_TEXT[self.session.status], id="status")
                yield Label("PEOPLE", classes="section-title")
                yield Static("", id="people")
                yield Label("CALL", classes="section-title")
                yield Static("", id="call-state")

            with Vertical(id="main-panel"):
                yield RichLog(id="chat-view", markup=True, wrap=True)
                yield Label("TRANSFERS", classes="section-title")
                yield DataTable(id="transfers-table")

        with Horizontal(id="command-bar"):
            yield Input(
                placeholder="Message (or /help for commands)...",
                id="command-input",
            )

        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#transfers-table", DataTable)
        table.add_column("File", key="file")
        table.add_column("Size", key="size")
        table.add_column("From", key="from")
        table.add_column("Progress", key="progress")
        table.cursor_type = "row"
        table.zebra_stripes = True

        self._refresh_people()
        self._refresh_call()
        self.session.subscribe(self._on_session_event)
        role = "Hosting" if self.session.is_host else "Joining"
        self._log(f"{role} room [bold #5ec4ff]{self.session.room_token}[/]")
        self.run_worker(self.session.start(), exclusive=True)

    # --------------------------------------------------------------------------
    # Rendering
    # --------------------------------------------------------------------------

    def _log(self, message: str) -> None:
        chat = self.query_one("#chat-view", RichLog)
        ts = datetime.now().strftime("%H:%M")
        chat.write(f"[#41505e]{ts}[/]  {message}")

    def _write_chat(self, entry: ChatEntry) -> None:
        chat = self.query_one("#chat-view", RichLog)
        ts = datetime.fromtimestamp(entry.sent_at / 1000).strftime("%H:%M")
        is_local = entry.sender.id == self.session.local_user.id
        name = "You" if is_local else entry.sender.display_name
        color = entry.sender.color_tag or "#718096"
        chat.write(f"[#41505e]{ts}[/]  [bold {color}]{name}[/]  {entry.content}")

    def _refresh_people(self) -> None:
        me = self.session.local_user
        lines = [f"[{me.color_tag}]●[/] {me.display_name} (you)"]
        peer = self.session.peer_user
        if peer is not None:
            lines.append(f"[{peer.color_tag}]●[/] {peer.display_name}")
        self.query_one("#people", Static).update("\n".join(lines))

    def _refresh_call(self) -> None:
        s = self.session
        mic = "muted" if s.muted else "on"
        cam = "off" if s.camera_off else "on"
        remote = "receiving" if s.remote_stream is not None else "no remote media"
        self.query_one("#call-state", Static).update(
            f"Mic: {mic}\nCamera: {cam}\nRemote: {remote}"
        )

    def _refresh_transfer(self, record: FileTransferRecord) -> None:
        table = self.query_one("#transfers-table", DataTable)
        if record.failed:
            progress = f"[#e74c3c]{record.error}[/]"
        elif record.complete:
            saved = self._saved.get(record.file_id)
            progress = "[#00ff9f]saved[/]" if saved else "[#00ff9f]done[/]"
        else:
            progress = f"{record.progress * 100:.0f}%"
        sender = "You" if record.direction == OUTGOING else record.sender.display_name

        if record.file_id in self._rows:
            table.update_cell(record.file_id, "progress", progress)
        else:
            self._rows.add(record.file_id)
            table.add_row(
                record.file_name,
                format_size(record.file_size),
                sender,
                progress,
                key=record.file_id,
            )

    # --------------------------------------------------------------------------
    # Session events
    # --------------------------------------------------------------------------

    def _on_session_event(self, event: SessionEvent) -> None:
        if event.kind == "status":
            self.query_one("#status", Static).update(STATUS_TEXT[event.payload])
            if event.payload is ConnectionStatus.ERROR and self.session.error:
                self._log(f"[#e74c3c]{self.session.error.hint}[/]")
                self.notify(self.session.error.hint, severity="error")
            elif event.payload is ConnectionStatus.DISCONNECTED:
                self._log("[#718ca1]The call has ended.[/]")
            elif event.payload is ConnectionStatus.WAITING:
                self._log("Share the room token so the other person can join.")
            self._refresh_call()
        elif event.kind == "presence":
            self._refresh_people()
            self._log(f"[#00ff9f]{event.payload.display_name} joined[/]")
        elif event.kind == "chat":
            self._write_chat(event.payload)
        elif event.kind == "transfer":
            record = event.payload
            if record.direction != OUTGOING and record.complete:
                if record.file_id not in self._saved:
                    self._log(
                        f"Received [bold]{record.file_name}[/] "
                        f"({format_size(record.file_size)}), press F5 to save"
                    )
            self._refresh_transfer(record)
        elif event.kind in ("media", "remote-stream"):
            self._refresh_call()

    # --------------------------------------------------------------------------
    # Actions
    # --------------------------------------------------------------------------

    def action_show_help(self) -> None:
        self.push_screen(HelpScreen())

    def action_toggle_mute(self) -> None:
        self.session.toggle_mute()

    def action_toggle_camera(self) -> None:
        self.session.toggle_camera()

    def action_send_file(self) -> None:
        self.push_screen(SendFileScreen(), self._send_file)

    def action_save_files(self) -> None:
        count = 0
        for record in self.session.transfers:
            if record.direction == OUTGOING or not record.complete:
                continue
            if record.file_id in self._saved:
                continue
            path = record.artifact.save(self.downloads_dir)
            self._saved[record.file_id] = path
            self._refresh_transfer(record)
            self._log(f"Saved [bold]{record.file_name}[/] -> [#718ca1]{path}[/]")
            count += 1
        if not count:
            self.notify("Nothing new to save")

    def action_leave(self) -> None:
        self.session.leave()
        self.exit()

    def on_unmount(self) -> None:
        # Close sockets while the event loop is still running.
        self.session.leave()

    def _send_file(self, path: str | None) -> None:
        if not path:
            return
        path = os.path.expanduser(path)
        try:
            record = self.session.send_file(path)
        except SessionError as e:
            self.notify(str(e), title=e.hint, severity="error")
            return
        except OSError as e:
            self.notify(f"Cannot read {path}: {e.strerror}", severity="error")
            return
        self._log(f"Sending [bold]{record.file_name}[/] ({format_size(record.file_size)})")

    # --------------------------------------------------------------------------
    # Command input
    # --------------------------------------------------------------------------

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "command-input":
            return
        text = event.value.strip()
        event.input.value = ""
        if not text:
            return

        if not text.startswith("/"):
            try:
                self.session.send_chat(text)
            except SessionError as e:
                self.notify(e.hint, severity="warning")
            return

        cmd, _, arg = text[1:].partition(" ")
        cmd = cmd.lower()
        if cmd == "send":
            if arg.strip():
                self._send_file(arg.strip())
            else:
                self.action_send_file()
        elif cmd == "save":
            self.action_save_files()
        elif cmd == "mute":
            self.action_toggle_mute()
        elif cmd == "camera":
            self.action_toggle_camera()
        elif cmd == "help":
            self.action_show_help()
        elif cmd in ("quit", "exit", "leave"):
            self.action_leave()
        else:
            self.notify(f"Unknown command: /{cmd}", severity="warning")


def run_tui(session: Session, downloads_dir: str = DOWNLOADS_DIR) -> None:
    PeerMeetApp(session, downloads_dir).run()
