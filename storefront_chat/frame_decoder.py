"""
Server-sent-events framing for the assistant stream.

The backend writes one event per line::

    data: {"type": "message_chunk", "content": "Hi"}
    data: {"type": "artifact", "artifacts": {...}}
    data: [DONE]

:class:`FrameDecoder` turns raw byte chunks into those payload strings.
Bytes are decoded incrementally so a multi-byte character split across two
reads is reassembled instead of being mangled.
"""

import codecs
import threading
from typing import Iterable, Iterator

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def is_done(payload: str) -> bool:
    """True for the end-of-stream sentinel, ignoring surrounding whitespace."""
    return payload.strip() == DONE_SENTINEL


class FrameDecoder:
    """Incremental ``data:`` line extractor.

    ``feed()`` may be called with arbitrary slices of the byte stream; each
    call returns the payloads completed by that slice, in order.  Call
    ``flush()`` once the transport closes to release a final unterminated
    line.
    """

    def __init__(self, prefix: str = DATA_PREFIX, encoding: str = "utf-8") -> None:
        self._prefix = prefix
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return self._extract(lines)

    def flush(self) -> list[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._extract([tail]) if tail else []

    def _extract(self, lines: list[str]) -> list[str]:
        payloads = []
        for line in lines:
            if line.endswith("\r"):
                line = line[:-1]
            if not line.startswith(self._prefix):
                continue
            payload = line[len(self._prefix):]
            if payload:
                payloads.append(payload)
        return payloads


def iter_payloads(
    chunks: Iterable[bytes],
    cancel: threading.Event | None = None,
    decoder: FrameDecoder | None = None,
) -> Iterator[str]:
    """Yield event payloads from *chunks* until ``[DONE]``, close, or cancel.

    The sentinel itself is yielded so the consumer can tell an explicit end
    of stream from the transport simply closing; nothing is read after it.
    When *cancel* is set the generator returns quietly without yielding
    anything further.  Transport exceptions propagate unchanged.
    """
    decoder = decoder or FrameDecoder()
    for chunk in chunks:
        if cancel is not None and cancel.is_set():
            return
        if not chunk:
            continue
        for payload in decoder.feed(chunk):
            if cancel is not None and cancel.is_set():
                return
            yield payload
            if is_done(payload):
                return
    if cancel is not None and cancel.is_set():
        return
    for payload in decoder.flush():
        yield payload
        if is_done(payload):
            return
