"""
One conversation with the storefront assistant.

:class:`ConversationSession` owns the message list and drives each *turn*
(one user send → one streamed assistant reply) through an explicit state
machine::

    IDLE → SENDING → STREAMING → (COMPLETED | ERRORED | CANCELLED) → IDLE

Network I/O runs on a worker; every state change happens on the owner
thread when it pumps the :class:`~.ui_queue.UiQueue`.  Each turn carries a
ticket. Once a turn is finished or cancelled its ticket is retired and
anything its worker still posts is discarded, so nothing touches a message
after the cancellation handle returns.

Only one turn may be active.  A ``send()`` while a reply is still being
sent or streamed is refused with :class:`SendRefused`; it never cancels the
earlier turn implicitly.
"""

import logging
import threading
from dataclasses import replace
from enum import Enum
from typing import Callable, Sequence

import requests

from .api_client import ChatAPIClient, StorefrontAPIError
from .artifacts import DEFAULT_IDENTITY_FIELD, finalize_artifacts, merge_artifact
from .auth import TokenProvider
from .config import ChatSettings, load_settings
from .events import EventDispatcher
from .frame_decoder import iter_payloads
from .history import HistoryPager
from .models import Artifact, Message, Role
from .ui_queue import Spawn, UiQueue, run_in_thread
from .uploads import UploadCoordinator

log = logging.getLogger("storefront_chat")


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class SendRefused(RuntimeError):
    """A send was refused before anything was appended or requested.

    ``reason`` is one of ``"busy"``, ``"uploading"``, ``"empty"``,
    ``"clearing"``, ``"disposed"``.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class _Turn:
    """Bookkeeping for one in-flight stream."""

    def __init__(self, ticket: int) -> None:
        self.ticket = ticket
        self.cancel = threading.Event()
        self.response: requests.Response | None = None
        self.dispatcher: EventDispatcher | None = None
        self.assistant: Message | None = None


class ConversationSession:
    """Messages, uploads and history for one signed-in user."""

    def __init__(
        self,
        api: ChatAPIClient,
        *,
        ui_queue: UiQueue | None = None,
        spawn: Spawn = run_in_thread,
        collection_name: str = "chatbot-foxai",
        identity_field: str = DEFAULT_IDENTITY_FIELD,
        max_files: int = 5,
        max_total_bytes: int = 200 * 1024 * 1024,
        page_size: int = 10,
        near_top: float = 100.0,
        measure: Callable[[Sequence[Message]], float] = len,
        on_message: Callable[[Message], None] | None = None,
        on_state_change: Callable[[SessionState], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        self._api = api
        self.ui = ui_queue or UiQueue()
        self._spawn = spawn
        self._collection_name = collection_name
        self._identity_field = identity_field
        self.on_message = on_message
        self.on_state_change = on_state_change
        self.on_error = on_error

        self.messages: list[Message] = []
        self.uploads = UploadCoordinator(
            api, self.ui,
            max_files=max_files,
            max_total_bytes=max_total_bytes,
            spawn=spawn,
        )
        self.history = HistoryPager(
            api, self.messages, self.ui,
            page_size=page_size,
            near_top=near_top,
            measure=measure,
            spawn=spawn,
        )

        self.state = SessionState.IDLE
        self.last_outcome: SessionState | None = None
        self.last_error: str | None = None
        self._turn: _Turn | None = None
        self._next_ticket = 0
        self._clearing = False
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        settings: ChatSettings | None = None,
        token_provider: Callable[[], str | None] | None = None,
        **kwargs,
    ) -> "ConversationSession":
        """Build a session (and its API client) from settings."""
        settings = settings or load_settings()
        token_provider = token_provider or TokenProvider()
        api = ChatAPIClient(
            settings.api_base_url,
            token_provider,
            connect_timeout=settings.connect_timeout,
            request_timeout=settings.request_timeout,
            upload_provider=settings.upload_provider,
            on_unauthorized=getattr(token_provider, "forget", None),
        )
        kwargs.setdefault("collection_name", settings.collection_name)
        kwargs.setdefault("identity_field", settings.artifact_identity_field)
        kwargs.setdefault("max_files", settings.max_files)
        kwargs.setdefault("max_total_bytes", settings.max_total_bytes)
        kwargs.setdefault("page_size", settings.history_page_size)
        kwargs.setdefault("near_top", settings.near_top_threshold)
        return cls(api, **kwargs)

    def dispose(self) -> None:
        """Cancel everything in flight and release the HTTP session."""
        if self._disposed:
            return
        self.cancel()
        self.uploads.clear()
        self.history.reset()
        self._disposed = True
        close = getattr(self._api, "close", None)
        if close is not None:
            close()
        log.debug("[SESSION] Disposed.")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.SENDING, SessionState.STREAMING)

    @property
    def clearing(self) -> bool:
        """True while a server-side history delete is in flight."""
        return self._clearing

    @property
    def open_message(self) -> Message | None:
        """The assistant message still receiving chunks, if any."""
        return self._turn.assistant if self._turn is not None else None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def send(self, text: str) -> Callable[[], None]:
        """Start a turn; returns its zero-argument cancellation handle.

        Raises :class:`SendRefused` without touching the message list when
        a turn is already active, attachments are still uploading, a history
        delete is still in flight, or there is nothing to send.
        """
        if self._disposed:
            raise SendRefused("disposed", "Session has been disposed")
        if self._clearing:
            raise SendRefused("clearing", "History is being cleared")
        if self.is_active:
            raise SendRefused("busy", "A reply is still streaming")
        if self.uploads.is_busy:
            raise SendRefused("uploading", "Files are still uploading")

        text = text.strip()
        attachments = [replace(d) for d in self.uploads.ready_descriptors()]
        if not text and not attachments:
            raise SendRefused("empty", "Nothing to send")

        user = Message(role=Role.USER, content=text,
                       attachments=attachments, sealed=True)
        self.messages.append(user)
        self._notify(user)
        self.uploads.clear()

        body: dict = {"message": text, "collection_name": self._collection_name}
        if attachments:
            body["file_metadata"] = [d.to_wire() for d in attachments]

        self._next_ticket += 1
        turn = _Turn(self._next_ticket)
        self._turn = turn
        self.last_error = None
        self._set_state(SessionState.SENDING)
        log.info("[SESSION] Turn %d: sending %d chars, %d attachment(s).",
                 turn.ticket, len(text), len(attachments))
        self._spawn(self._worker, turn, body)
        return lambda: self._cancel_turn(turn)

    def cancel(self) -> None:
        """Cancel the active turn, if any.  Never reported as an error."""
        if self._turn is not None:
            self._cancel_turn(self._turn)

    def load_older(self) -> bool:
        return self.history.load_more()

    def clear_history(self, delete_remote: bool = False) -> None:
        """Full reset of the message list (and pager).

        With *delete_remote* the server history is deleted first and the
        local list is only reset once the backend confirms.
        """
        self.cancel()
        if not delete_remote:
            self._apply_clear()
            return
        self._clearing = True
        self._spawn(self._clear_worker)

    # ------------------------------------------------------------------
    # Worker (background thread)
    # ------------------------------------------------------------------

    def _worker(self, turn: _Turn, body: dict) -> None:
        try:
            response = self._api.open_stream(body)
        except Exception as exc:  # noqa: BLE001
            if not turn.cancel.is_set():
                self._report_worker_error(turn, exc)
            return

        turn.response = response
        try:
            if turn.cancel.is_set():
                return
            self.ui.post(self._on_opened, turn.ticket)
            for payload in iter_payloads(response.iter_content(chunk_size=None),
                                         turn.cancel):
                self.ui.post(self._on_payload, turn.ticket, payload)
        except Exception as exc:  # noqa: BLE001
            if not turn.cancel.is_set():
                self._report_worker_error(turn, exc)
            return
        finally:
            response.close()

        if not turn.cancel.is_set():
            self.ui.post(self._on_transport_closed, turn.ticket)

    def _report_worker_error(self, turn: _Turn, exc: Exception) -> None:
        if isinstance(exc, StorefrontAPIError):
            log.error("[SESSION] Stream request failed: %s", exc)
        elif isinstance(exc, requests.RequestException):
            log.error("[SESSION] Network error while streaming: %s", exc)
            exc = StorefrontAPIError(
                f"Network error — could not reach the assistant.\n  Detail: {exc}",
            )
        else:
            log.error("[SESSION] Unexpected error in stream worker: %s: %s",
                      type(exc).__name__, exc, exc_info=exc)
        self.ui.post(self._on_transport_error, turn.ticket, exc)

    def _clear_worker(self) -> None:
        try:
            deleted = self._api.delete_all_messages()
        except Exception as exc:  # noqa: BLE001
            log.error("[SESSION] Could not delete history: %s", exc)
            self.ui.post(self._clear_failed, f"Could not clear history: {exc}")
            return
        log.info("[SESSION] Deleted %d message(s) on the server.", deleted)
        self.ui.post(self._apply_clear)

    # ------------------------------------------------------------------
    # Owner-thread transitions
    # ------------------------------------------------------------------

    def _current(self, ticket: int) -> _Turn | None:
        turn = self._turn
        if turn is None or turn.ticket != ticket:
            return None
        return turn

    def _on_opened(self, ticket: int) -> None:
        turn = self._current(ticket)
        if turn is None or turn.assistant is not None:
            return
        turn.assistant = Message(role=Role.ASSISTANT, artifacts=[])
        turn.dispatcher = EventDispatcher(
            on_content=lambda text: self._on_content(turn, text),
            on_artifact=lambda artifact: self._on_artifact(turn, artifact),
            on_complete=lambda: self._on_complete(turn),
            on_error=lambda exc: self._on_error(turn, exc),
        )
        self.messages.append(turn.assistant)
        self._set_state(SessionState.STREAMING)
        self._notify(turn.assistant)

    def _on_payload(self, ticket: int, payload: str) -> None:
        turn = self._current(ticket)
        if turn is None or turn.dispatcher is None:
            return
        turn.dispatcher.dispatch(payload)

    def _on_transport_closed(self, ticket: int) -> None:
        turn = self._current(ticket)
        if turn is None or turn.dispatcher is None:
            return
        turn.dispatcher.close()

    def _on_transport_error(self, ticket: int, exc: Exception) -> None:
        turn = self._current(ticket)
        if turn is None:
            return
        if turn.dispatcher is not None:
            turn.dispatcher.fail(exc)
        else:
            self._on_error(turn, exc)

    def _on_content(self, turn: _Turn, text: str) -> None:
        turn.assistant.append(text)
        self._notify(turn.assistant)

    def _on_artifact(self, turn: _Turn, artifact: Artifact) -> None:
        merge_artifact(turn.assistant.artifacts, artifact, self._identity_field)
        self._notify(turn.assistant)

    def _on_complete(self, turn: _Turn) -> None:
        message = turn.assistant
        finalize_artifacts(message.artifacts, self._identity_field)
        message.seal()
        self._turn = None
        log.info("[SESSION] Turn %d completed: %d chars, %d artifact group(s).",
                 turn.ticket, len(message.content), len(message.artifacts))
        self._notify(message)
        self._finish(SessionState.COMPLETED)

    def _on_error(self, turn: _Turn, exc: Exception) -> None:
        if turn.assistant is not None:
            turn.assistant.seal()
            self._notify(turn.assistant)
        self._turn = None
        self._finish(SessionState.ERRORED)
        self._surface_error(str(exc))

    def _cancel_turn(self, turn: _Turn) -> None:
        if self._turn is not turn:
            return
        turn.cancel.set()
        if turn.response is not None:
            turn.response.close()
        self._turn = None
        if turn.assistant is not None:
            turn.assistant.seal()
            self._notify(turn.assistant)
        log.info("[SESSION] Turn %d cancelled.", turn.ticket)
        self._finish(SessionState.CANCELLED)

    def _clear_failed(self, message: str) -> None:
        self._clearing = False
        self._surface_error(message)

    def _apply_clear(self) -> None:
        self._clearing = False
        self.messages.clear()
        self.history.reset()
        log.info("[SESSION] History cleared.")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(self, outcome: SessionState) -> None:
        self.last_outcome = outcome
        self._set_state(outcome)
        self._set_state(SessionState.IDLE)

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _surface_error(self, message: str) -> None:
        self.last_error = message
        if self.on_error is not None:
            self.on_error(message)

    def _notify(self, message: Message) -> None:
        if self.on_message is not None:
            self.on_message(message)
