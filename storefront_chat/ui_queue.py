"""
Bridge between network worker threads and the owner ("UI") thread.

Workers never touch session state.  They ``post()`` closures here and the
owner thread applies them in FIFO order with ``pump()``, the same pattern a
Tk app uses with ``root.after(40, pump)``.  Every piece of shared state
therefore has a single writer and no locks are needed.
"""

import logging
import queue
import threading
from typing import Callable

log = logging.getLogger("storefront_chat")

Spawn = Callable[..., None]


def run_in_thread(target: Callable, *args) -> None:
    """Default ``spawn``: run *target* on a daemon background thread."""
    threading.Thread(target=target, args=args, daemon=True).start()


class UiQueue:
    """FIFO of callbacks executed on the thread that calls :meth:`pump`."""

    def __init__(self) -> None:
        self._queue: queue.Queue = queue.Queue()

    def post(self, fn: Callable, *args) -> None:
        """Schedule ``fn(*args)`` for the owner thread.  Thread-safe."""
        self._queue.put((fn, args))

    def pending(self) -> int:
        return self._queue.qsize()

    def pump(self, timeout: float | None = None, limit: int | None = None) -> int:
        """Run queued callbacks; return how many ran.

        With *timeout*, wait up to that many seconds for the first callback
        when the queue is empty.  *limit* caps the number executed.
        """
        ran = 0
        block = timeout is not None
        while limit is None or ran < limit:
            try:
                if block and ran == 0:
                    fn, args = self._queue.get(timeout=timeout)
                else:
                    fn, args = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                fn(*args)
            except Exception:  # noqa: BLE001
                log.error("[UI] Callback %r failed", fn, exc_info=True)
            ran += 1
        return ran
