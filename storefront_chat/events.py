"""
Classification and dispatch of assistant stream payloads.

Every payload produced by :mod:`.frame_decoder` is turned into exactly one
of the event variants below by :func:`classify`, which never raises:

* :class:`ContentChunk`  — text to append to the open assistant message.
* :class:`ArtifactChunk` — a typed side payload (e.g. product results).
* :class:`Completion`    — ``[DONE]`` or an explicit completion marker.
* :class:`StreamFault`   — the backend reported an error inside the stream.
* :class:`Unrecognized`  — anything else; dropped without aborting the turn.

Payloads that are not JSON at all are treated as plain assistant text so
that naive or legacy backends still render.
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, Union

from .frame_decoder import is_done
from .models import Artifact

log = logging.getLogger("storefront_chat")

_COMPLETION_TYPES = frozenset({"done", "complete", "message_complete"})


class StreamEventError(Exception):
    """Error event delivered inside an otherwise healthy stream."""


# ---------------------------------------------------------------------------
# Event variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentChunk:
    text: str


@dataclass(frozen=True)
class ArtifactChunk:
    artifact: Artifact


@dataclass(frozen=True)
class Completion:
    pass


@dataclass(frozen=True)
class StreamFault:
    message: str


@dataclass(frozen=True)
class Unrecognized:
    payload: str
    reason: str


StreamEvent = Union[ContentChunk, ArtifactChunk, Completion, StreamFault, Unrecognized]


def _fault_message(parsed: dict) -> str:
    err = parsed.get("error")
    if isinstance(err, dict):
        return f"[{err.get('type', 'error')}] {err.get('message', str(err))}"
    if err:
        return str(err)
    return str(parsed.get("message") or "stream reported an error")


def classify(payload: str) -> StreamEvent:
    """Return the event variant for one payload string."""
    if is_done(payload):
        return Completion()

    try:
        parsed = json.loads(payload)
    except ValueError:
        return ContentChunk(payload)

    if isinstance(parsed, list):
        return Unrecognized(payload, "JSON array")
    if isinstance(parsed, str):
        if not parsed:
            return Unrecognized(payload, "empty string")
        return ContentChunk(parsed)
    if not isinstance(parsed, dict):
        # Bare numbers and booleans are plain text that happens to parse.
        return ContentChunk(payload)

    kind = parsed.get("type")
    name = parsed.get("name")

    if kind == "message_chunk":
        content = parsed.get("content")
        if isinstance(content, str) and content:
            return ContentChunk(content)
        return Unrecognized(payload, "empty message_chunk")

    if kind == "artifact" or name == "artifact":
        artifact = Artifact.from_wire(parsed.get("artifacts"))
        if artifact is None:
            return Unrecognized(payload, "empty artifact")
        return ArtifactChunk(artifact)

    if kind in _COMPLETION_TYPES:
        return Completion()

    if kind == "error":
        return StreamFault(_fault_message(parsed))

    # Older backends send {"content": "..."} without a type.
    if kind is None and name is None:
        content = parsed.get("content")
        if isinstance(content, str) and content:
            return ContentChunk(content)

    return Unrecognized(payload, f"unknown event type {kind or name!r}")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class EventDispatcher:
    """Route classified payloads of one stream to its callbacks.

    Exactly one of *on_complete* / *on_error* fires, exactly once; after
    that every further call is ignored.
    """

    def __init__(
        self,
        on_content: Callable[[str], None],
        on_artifact: Callable[[Artifact], None],
        on_complete: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        self._on_content = on_content
        self._on_artifact = on_artifact
        self._on_complete = on_complete
        self._on_error = on_error
        self._finished = False
        self.dropped = 0

    @property
    def finished(self) -> bool:
        return self._finished

    def dispatch(self, payload: str) -> StreamEvent | None:
        if self._finished:
            return None
        event = classify(payload)
        if isinstance(event, ContentChunk):
            self._on_content(event.text)
        elif isinstance(event, ArtifactChunk):
            self._on_artifact(event.artifact)
        elif isinstance(event, Completion):
            self._complete()
        elif isinstance(event, StreamFault):
            log.error("[STREAM] Backend reported an error: %s", event.message)
            self.fail(StreamEventError(event.message))
        else:
            self.dropped += 1
            log.warning("[STREAM] Skipping frame (%s): %s",
                        event.reason, event.payload[:200])
        return event

    def close(self) -> None:
        """Transport closed; synthesize completion if nothing ended the stream."""
        if not self._finished:
            log.debug("[STREAM] Transport closed without terminator.")
            self._complete()

    def fail(self, exc: Exception) -> None:
        if self._finished:
            return
        self._finished = True
        self._on_error(exc)

    def _complete(self) -> None:
        self._finished = True
        self._on_complete()
