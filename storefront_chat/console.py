"""
Line-oriented console front-end for the storefront assistant.

This is the thin rendering layer: it prints message snapshots handed out by
the session and pumps the session's UI queue.  It is the only thread that
touches session state.

Commands
--------
``/attach <path> [...]``  upload files for the next message
``/files``                list attached files
``/drop <n>``             remove attached file *n*
``/more``                 load older history
``/clear``                delete the whole history (server + local)
``/token <value>``        store a bearer token
``/quit``                 exit

Anything else is sent as a message.  Ctrl+C while a reply is streaming
cancels it.
"""

import shlex
import sys

from .auth import save_token
from .file_handler import SelectedFile
from .history import PageLoadResult
from .models import Message, Role, UploadStatus, UploadTask
from .session import ConversationSession, SendRefused, SessionState
from .uploads import UploadRejected

_PUMP_INTERVAL = 0.04  # seconds

_HELP = """\
  /attach <path> [...]  upload files for the next message
  /files                list attached files
  /drop <n>             remove attached file n
  /more                 load older history
  /clear                delete the whole history
  /token <value>        store a bearer token
  /quit                 exit
"""


class ConsoleChat:
    """Drives a :class:`ConversationSession` from stdin/stdout."""

    def __init__(self, session: ConversationSession, out=None) -> None:
        self._session = session
        self._out = out or sys.stdout
        self._printed: dict[str, int] = {}

        session.on_message = self._on_message
        session.on_state_change = self._on_state_change
        session.on_error = self._on_error
        session.uploads.on_change = self._on_upload_change
        session.history.on_loaded = self._on_history_loaded
        session.history.on_error = self._on_error

    # ------------------------------------------------------------------
    # Rendering callbacks (owner thread)
    # ------------------------------------------------------------------

    def _write(self, text: str) -> None:
        self._out.write(text)
        self._out.flush()

    def _on_message(self, message: Message) -> None:
        if message.role == Role.USER:
            return
        done = self._printed.get(message.id)
        if done is None:
            self._write("Assistant: ")
            done = 0
        self._write(message.content[done:])
        self._printed[message.id] = len(message.content)

    def _on_state_change(self, state: SessionState) -> None:
        if state == SessionState.COMPLETED:
            message = self._last_assistant()
            self._write("\n")
            if message is not None:
                for artifact in message.artifacts or []:
                    self._write(f"  [{artifact.type}: {len(artifact.data)} item(s)]\n")
        elif state == SessionState.CANCELLED:
            self._write("\n  (cancelled)\n")

    def _on_error(self, text: str) -> None:
        self._write(f"\n⚠️  Error: {text}\n")

    def _on_upload_change(self, task: UploadTask) -> None:
        if task.status == UploadStatus.UPLOADED:
            self._write(f"  📎 {task.file.name} uploaded\n")
        elif task.status == UploadStatus.ERROR:
            self._write(f"  ⚠️  {task.file.name}: {task.error}\n")

    def _on_history_loaded(self, result: PageLoadResult) -> None:
        if not result.added:
            self._write("  (no older messages)\n")
            return
        self._write(f"── page {result.page.page_number} ──\n")
        for message in result.added:
            label = "You" if message.role == Role.USER else "Assistant"
            self._write(f"{label}: {message.content}\n")
        if not self._session.history.has_more:
            self._write("── start of conversation ──\n")

    def _last_assistant(self) -> Message | None:
        for message in reversed(self._session.messages):
            if message.role == Role.ASSISTANT:
                return message
        return None

    # ------------------------------------------------------------------
    # Pumping
    # ------------------------------------------------------------------

    def _wait(self, busy) -> None:
        """Pump the UI queue while *busy()*; Ctrl+C cancels a stream."""
        try:
            while busy():
                self._session.ui.pump(timeout=_PUMP_INTERVAL)
        except KeyboardInterrupt:
            self._session.cancel()
        self._session.ui.pump()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _attach(self, args: list[str]) -> None:
        try:
            files = [SelectedFile.from_path(p) for p in args]
        except OSError as exc:
            self._write(f"⚠️  {exc}\n")
            return
        try:
            self._session.uploads.add_files(files)
        except UploadRejected as exc:
            self._write(f"⚠️  {exc}\n")
            return
        self._wait(lambda: self._session.uploads.is_busy)

    def _list_files(self) -> None:
        tasks = self._session.uploads.tasks
        if not tasks:
            self._write("  (no files attached)\n")
        for n, task in enumerate(tasks, 1):
            self._write(f"  {n}. {task.file.name}  {task.status.value}"
                        f"  {task.progress}%\n")

    def _drop(self, args: list[str]) -> None:
        tasks = self._session.uploads.tasks
        try:
            task = tasks[int(args[0]) - 1]
        except (IndexError, ValueError):
            self._write("  usage: /drop <n>\n")
            return
        self._session.uploads.remove(task.id)

    def _send(self, text: str) -> None:
        try:
            self._session.send(text)
        except SendRefused as exc:
            self._write(f"⚠️  {exc}\n")
            return
        self._wait(lambda: self._session.is_active)

    def handle(self, line: str) -> bool:
        """Process one input line; returns False when the user quits."""
        line = line.strip()
        if not line:
            return True
        if not line.startswith("/"):
            self._send(line)
            return True

        command, *args = shlex.split(line)
        if command == "/quit":
            return False
        if command == "/attach" and args:
            self._attach(args)
        elif command == "/files":
            self._list_files()
        elif command == "/drop":
            self._drop(args)
        elif command == "/more":
            if self._session.load_older():
                self._wait(lambda: self._session.history.loading)
            else:
                self._write("  (nothing more to load)\n")
        elif command == "/clear":
            self._session.clear_history(delete_remote=True)
            self._wait(lambda: self._session.clearing)
            if not self._session.messages:
                self._printed.clear()
                self._write("  (history cleared)\n")
        elif command == "/token" and args:
            save_token(args[0])
            self._write("  (token saved)\n")
        else:
            self._write(_HELP)
        return True

    def run(self) -> None:
        self._write("Storefront assistant — type /quit to exit.\n")
        if self._session.load_older():
            self._wait(lambda: self._session.history.loading)
        while True:
            try:
                line = input("> ")
            except (EOFError, KeyboardInterrupt):
                self._write("\n")
                break
            self._session.ui.pump()
            if not self.handle(line):
                break
        self._session.dispose()
