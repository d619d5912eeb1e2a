"""In-memory stand-ins for the HTTP layer and the worker threads.

Nothing here opens a socket.  ``sync_spawn`` runs a worker inline so a test
only has to pump the UI queue; :class:`DeferredSpawn` holds workers back so
a test can interleave them by hand.
"""

import json

from storefront_chat.api_client import StorefrontAPIError, UploadCancelled
from storefront_chat.models import FileDescriptor


def sync_spawn(target, *args) -> None:
    target(*args)


class DeferredSpawn:
    """Collects spawned workers; ``run(i)`` / ``run_all()`` execute them."""

    def __init__(self) -> None:
        self.calls: list = []

    def __call__(self, target, *args) -> None:
        self.calls.append((target, args))

    def run(self, index: int) -> None:
        target, args = self.calls[index]
        target(*args)

    def run_all(self) -> None:
        calls, self.calls = self.calls, []
        for target, args in calls:
            target(*args)


def sse(*payloads: str) -> bytes:
    """Encode payload strings as ``data:`` lines."""
    return "".join(f"data: {p}\n" for p in payloads).encode("utf-8")


def chunk(text: str) -> str:
    return json.dumps({"type": "message_chunk", "content": text})


def artifact(kind: str, *items: dict) -> str:
    return json.dumps({"type": "artifact",
                       "artifacts": {"type": kind, "data": list(items)}})


class FakeStreamResponse:
    """What ``ChatAPIClient.open_stream`` hands back: bytes and ``close()``."""

    def __init__(self, chunks, error: Exception | None = None) -> None:
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def iter_content(self, chunk_size=None):
        for c in self._chunks:
            if self.closed:
                return
            yield c
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self.closed = True


class FakeHTTPResponse:
    """Minimal ``requests.Response`` look-alike for the API client tests."""

    def __init__(self, status_code: int = 200, body=None, text: str | None = None) -> None:
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else (
            json.dumps(body) if body is not None else "")
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no JSON")
        return self._body

    def close(self) -> None:
        self.closed = True


def descriptor(name: str, file_id: str | None = None) -> FileDescriptor:
    return FileDescriptor(
        file_id=file_id or f"id-{name}",
        file_name=name,
        file_type="image/png",
        file_size=10,
        storage_url=f"https://cdn.example.com/{name}",
        provider_name="gemini-vision",
    )


class FakeAPI:
    """Scriptable replacement for :class:`ChatAPIClient`.

    * ``streams``  — responses (or exceptions) returned by ``open_stream``.
    * ``uploads``  — ``{file_name: FileDescriptor | Exception}``.
    * ``pages``    — ``{page_number: HistoryPage | Exception}``.
    """

    def __init__(self, streams=None, uploads=None, pages=None) -> None:
        self.streams = list(streams or [])
        self.uploads = dict(uploads or {})
        self.pages = dict(pages or {})
        self.progress_script: list[int] = [30, 60]
        self.bodies: list[dict] = []
        self.upload_calls: list[str] = []
        self.page_calls: list[tuple[int, int]] = []
        self.deleted = 0
        self.delete_error: Exception | None = None
        self.closed = False

    def open_stream(self, body: dict):
        self.bodies.append(body)
        result = self.streams.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def upload_file(self, file, on_progress=None, cancel=None):
        self.upload_calls.append(file.name)
        if cancel is not None and cancel.is_set():
            raise UploadCancelled("upload cancelled")
        for pct in self.progress_script:
            if on_progress is not None:
                on_progress(pct)
        result = self.uploads.get(file.name) or descriptor(file.name)
        if isinstance(result, Exception):
            raise result
        return result

    def get_messages(self, page=1, page_size=10):
        self.page_calls.append((page, page_size))
        result = self.pages[page]
        if isinstance(result, Exception):
            raise result
        return result

    def delete_all_messages(self) -> int:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted += 1
        return 3

    def close(self) -> None:
        self.closed = True


def api_error(detail: str, status: int = 500) -> StorefrontAPIError:
    return StorefrontAPIError(f"Request failed (HTTP {status}).\n{detail}",
                              status_code=status)
