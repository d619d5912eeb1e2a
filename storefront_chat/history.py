"""
Backward pagination of chat history.

Only the most recent page is loaded at start-up; older pages are fetched on
demand when the user scrolls near the top and are *prepended* to the shared
message list.  The caller gets the content extent before and after each
prepend so it can shift the viewport and keep the reader's place.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import requests

from .api_client import StorefrontAPIError
from .models import HistoryPage, Message
from .ui_queue import Spawn, UiQueue, run_in_thread

log = logging.getLogger("storefront_chat")

# How many messages to load at a time when scrolling up.
PAGE_SIZE = 10

#: Scroll offset (from the top) below which older messages are requested.
NEAR_TOP = 100.0


@dataclass
class PageLoadResult:
    page: HistoryPage
    added: list[Message]
    extent_before: float
    extent_after: float

    @property
    def anchor_delta(self) -> float:
        """Amount to add to the scroll offset to keep the viewport still."""
        return self.extent_after - self.extent_before


class HistoryPager:
    """Loads older messages into *messages* one page at a time."""

    def __init__(
        self,
        api,
        messages: list[Message],
        ui_queue: UiQueue,
        *,
        page_size: int = PAGE_SIZE,
        near_top: float = NEAR_TOP,
        measure: Callable[[Sequence[Message]], float] = len,
        spawn: Spawn = run_in_thread,
        on_loaded: Callable[[PageLoadResult], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        self._api = api
        self._messages = messages
        self._ui = ui_queue
        self._page_size = page_size
        self._near_top = near_top
        self._measure = measure
        self._spawn = spawn
        self.on_loaded = on_loaded
        self.on_error = on_error

        self._loaded_page = 0        # watermark: oldest page loaded so far
        self._has_more = True        # sticky False once exhausted
        self._loading = False        # guard against concurrent loads
        self._armed = True           # re-armed when scrolled away from the top
        self._generation = 0         # bumped by reset() to orphan stale loads
        self.last_error: str | None = None

    @property
    def has_more(self) -> bool:
        return self._has_more

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def next_page(self) -> int:
        return self._loaded_page + 1

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def on_scroll(self, scroll_top: float) -> bool:
        """Feed the current scroll offset; returns True if a load was issued.

        One approach to the top fires at most one request: the trigger
        disarms and only re-arms once the viewport leaves the top zone.
        """
        if scroll_top >= self._near_top:
            self._armed = True
            return False
        if not self._armed:
            return False
        if self.load_more():
            self._armed = False
            return True
        return False

    def load_more(self) -> bool:
        """Request the next older page unless busy or exhausted."""
        if self._loading or not self._has_more:
            return False
        self._loading = True
        self.last_error = None
        page = self.next_page
        log.debug("[HISTORY] Loading page %d (size %d).", page, self._page_size)
        self._spawn(self._worker, self._generation, page)
        return True

    def reset(self) -> None:
        """Forget pagination state; in-flight results are discarded."""
        self._generation += 1
        self._loaded_page = 0
        self._has_more = True
        self._loading = False
        self._armed = True
        self.last_error = None

    def reload(self) -> bool:
        """Full history reload (e.g. after clearing all messages)."""
        self.reset()
        return self.load_more()

    # ------------------------------------------------------------------
    # Worker (background thread) → owner-thread transitions
    # ------------------------------------------------------------------

    def _worker(self, generation: int, page: int) -> None:
        try:
            result = self._api.get_messages(page, self._page_size)
        except (StorefrontAPIError, requests.RequestException) as exc:
            log.error("[HISTORY] Page %d failed: %s", page, exc)
            self._ui.post(self._apply_error, generation, str(exc))
            return
        except Exception as exc:  # noqa: BLE001
            log.error("[HISTORY] Unexpected error loading page %d", page,
                      exc_info=True)
            self._ui.post(self._apply_error, generation,
                          f"{type(exc).__name__}: {exc}")
            return
        self._ui.post(self._apply_page, generation, page, result)

    def _apply_page(self, generation: int, page: int, result: HistoryPage) -> None:
        if generation != self._generation:
            log.debug("[HISTORY] Dropping stale page %d.", page)
            return
        known = {m.id for m in self._messages}
        added = [m for m in result.items if m.id not in known]
        extent_before = self._measure(self._messages)
        self._messages[:0] = added
        extent_after = self._measure(self._messages)

        self._loaded_page = page
        if not result.has_more:
            self._has_more = False
        self._loading = False
        log.info("[HISTORY] Page %d: %d message(s) prepended%s.",
                 page, len(added), "" if self._has_more else " (start reached)")
        if self.on_loaded is not None:
            self.on_loaded(PageLoadResult(result, added, extent_before, extent_after))

    def _apply_error(self, generation: int, message: str) -> None:
        if generation != self._generation:
            return
        self._loading = False
        self.last_error = message
        if self.on_error is not None:
            self.on_error(message)
