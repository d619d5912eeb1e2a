"""
Attachment uploads for the next outgoing message.

A batch of files is admitted atomically: either every file becomes an
:class:`~.models.UploadTask` or none does.  Each admitted file is then
uploaded on its own worker.  Workers report back through the
:class:`~.ui_queue.UiQueue`; only the owner thread ever changes a task.
"""

import logging
import threading
from typing import Callable, Iterable

import requests

from .api_client import StorefrontAPIError, UploadCancelled
from .file_handler import SelectedFile
from .models import FileDescriptor, UploadStatus, UploadTask
from .ui_queue import Spawn, UiQueue, run_in_thread

log = logging.getLogger("storefront_chat")

MAX_FILES = 5
MAX_TOTAL_BYTES = 200 * 1024 * 1024


class UploadRejected(ValueError):
    """A batch was refused before any upload started.

    ``reason`` is ``"count"`` or ``"size"``.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


def _format_size(num_bytes: int) -> str:
    mib = num_bytes / (1024 * 1024)
    return f"{mib:.0f}MB" if mib >= 1 else f"{num_bytes} bytes"


class UploadCoordinator:
    """Owns the list of upload tasks attached to the next send."""

    def __init__(
        self,
        api,
        ui_queue: UiQueue,
        *,
        max_files: int = MAX_FILES,
        max_total_bytes: int = MAX_TOTAL_BYTES,
        spawn: Spawn = run_in_thread,
        on_change: Callable[[UploadTask], None] | None = None,
    ) -> None:
        self._api = api
        self._ui = ui_queue
        self._spawn = spawn
        self._max_files = max_files
        self._max_total_bytes = max_total_bytes
        self.on_change = on_change
        self._tasks: list[UploadTask] = []
        self._cancels: dict[str, threading.Event] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def tasks(self) -> tuple[UploadTask, ...]:
        return tuple(self._tasks)

    @property
    def is_busy(self) -> bool:
        """True while any task is still pending or uploading."""
        return any(t.is_active for t in self._tasks)

    def total_bytes(self) -> int:
        return sum(t.file.size for t in self._tasks)

    def ready_descriptors(self) -> list[FileDescriptor]:
        return [t.descriptor for t in self._tasks
                if t.status == UploadStatus.UPLOADED and t.descriptor is not None]

    def get(self, task_id: str) -> UploadTask | None:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def check_batch(self, files: list[SelectedFile]) -> None:
        """Raise :class:`UploadRejected` if *files* cannot all be admitted."""
        if len(self._tasks) + len(files) > self._max_files:
            raise UploadRejected(
                "count", f"Maximum {self._max_files} files allowed",
            )
        new_bytes = sum(f.size for f in files)
        if self.total_bytes() + new_bytes > self._max_total_bytes:
            raise UploadRejected(
                "size",
                f"Total file size must be less than "
                f"{_format_size(self._max_total_bytes)}",
            )

    def add_files(self, files: Iterable[SelectedFile]) -> list[UploadTask]:
        """Admit a batch and start uploading every file in it."""
        files = list(files)
        if not files:
            return []
        self.check_batch(files)

        tasks = [UploadTask(file=f) for f in files]
        self._tasks.extend(tasks)
        for task in tasks:
            cancel = threading.Event()
            self._cancels[task.id] = cancel
            self._notify(task)
        log.info("[UPLOAD] Admitted %d file(s); %d attached in total.",
                 len(tasks), len(self._tasks))
        for task in tasks:
            self._spawn(self._worker, task.id, task.file, self._cancels[task.id])
        return tasks

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove(self, task_id: str) -> bool:
        """Drop one task; siblings are untouched.  Returns False if unknown."""
        task = self.get(task_id)
        if task is None:
            return False
        self._tasks.remove(task)
        cancel = self._cancels.pop(task_id, None)
        if cancel is not None:
            cancel.set()
        log.debug("[UPLOAD] Removed %s (%s, was %s).",
                  task_id, task.file.name, task.status.value)
        return True

    def clear(self) -> None:
        """Forget every task (after a send, or on discard)."""
        for cancel in self._cancels.values():
            cancel.set()
        self._cancels.clear()
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Worker (background thread) → owner-thread transitions
    # ------------------------------------------------------------------

    def _worker(self, task_id: str, file: SelectedFile,
                cancel: threading.Event) -> None:
        self._ui.post(self._mark_uploading, task_id)
        try:
            descriptor = self._api.upload_file(
                file,
                on_progress=lambda pct: self._ui.post(self._set_progress, task_id, pct),
                cancel=cancel,
            )
        except UploadCancelled:
            log.debug("[UPLOAD] %s cancelled.", file.name)
            return
        except StorefrontAPIError as exc:
            if cancel.is_set():
                return
            log.error("[UPLOAD] %s failed: %s", file.name, exc)
            reason = _extract_reason(exc)
            self._ui.post(self._fail, task_id, reason)
            return
        except (requests.RequestException, OSError) as exc:
            if cancel.is_set():
                return
            log.error("[UPLOAD] %s failed: %s", file.name, exc)
            self._ui.post(self._fail, task_id, f"Upload failed: {exc}")
            return
        except Exception as exc:  # noqa: BLE001
            if cancel.is_set():
                return
            log.error("[UPLOAD] Unexpected error uploading %s", file.name,
                      exc_info=True)
            self._ui.post(self._fail, task_id,
                          f"Upload failed: {type(exc).__name__}: {exc}")
            return
        self._ui.post(self._succeed, task_id, descriptor)

    def _live(self, task_id: str) -> UploadTask | None:
        """Return the task if it still exists and is not terminal."""
        task = self.get(task_id)
        if task is None or task.is_terminal:
            return None
        return task

    def _mark_uploading(self, task_id: str) -> None:
        task = self._live(task_id)
        if task is None or task.status != UploadStatus.PENDING:
            return
        task.status = UploadStatus.UPLOADING
        self._notify(task)

    def _set_progress(self, task_id: str, progress: int) -> None:
        task = self._live(task_id)
        if task is None:
            return
        progress = max(0, min(100, int(progress)))
        if progress > task.progress:
            task.progress = progress
            self._notify(task)

    def _succeed(self, task_id: str, descriptor: FileDescriptor) -> None:
        task = self._live(task_id)
        if task is None:
            return
        task.status = UploadStatus.UPLOADED
        task.progress = 100
        task.descriptor = descriptor
        self._cancels.pop(task_id, None)
        log.info("[UPLOAD] %s uploaded (file_id=%s).",
                 task.file.name, descriptor.file_id)
        self._notify(task)

    def _fail(self, task_id: str, reason: str) -> None:
        task = self._live(task_id)
        if task is None:
            return
        task.status = UploadStatus.ERROR
        task.error = reason
        self._cancels.pop(task_id, None)
        self._notify(task)

    def _notify(self, task: UploadTask) -> None:
        if self.on_change is not None:
            self.on_change(task)


def _extract_reason(exc: StorefrontAPIError) -> str:
    """The backend's detail line from a :class:`StorefrontAPIError`."""
    text = exc.args[0] if exc.args else str(exc)
    lines = [ln for ln in str(text).splitlines() if ln.strip()]
    if len(lines) > 1:
        return lines[1].strip()
    return lines[0] if lines else "Upload failed"
