"""
HTTP client for the storefront assistant backend.

Only the endpoints the chat core needs are wrapped here:

* ``POST   /v1/agents/chat/stream`` — SSE stream of assistant events
* ``POST   /v1/agents/chat/upload`` — multipart upload of a single file
* ``GET    /v1/messages``           — paginated history (page 1 = newest)
* ``DELETE /v1/messages``           — wipe the user's history

Responses use the backend's ``{"message": ..., "info": {...}}`` envelope;
``info`` is unwrapped before being returned.  The bearer token is fetched
from the injected ``token_provider`` on every request.
"""

import logging
import threading
from typing import Callable

import requests
from urllib3 import encode_multipart_formdata

from .file_handler import SelectedFile
from .models import FileDescriptor, HistoryPage, Message

log = logging.getLogger("storefront_chat")

STREAM_PATH = "/v1/agents/chat/stream"
UPLOAD_PATH = "/v1/agents/chat/upload"
MESSAGES_PATH = "/v1/messages"

_DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

_UPLOAD_BLOCK_SIZE = 64 * 1024


# ---------------------------------------------------------------------------
# Error-handling helpers
# ---------------------------------------------------------------------------

class StorefrontAPIError(Exception):
    """Rich API error that preserves diagnostic context for debugging.

    Attributes
    ----------
    status_code : int | None
        HTTP status code (``None`` for non-HTTP errors).
    endpoint : str
        The URL that was called.
    response_body : str
        First 500 chars of the response body (often contains the real error).
    payload_summary : dict | None
        Summarised payload (keys + a few values) for reproducing the issue.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
        response_body: str = "",
        payload_summary: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_body = response_body
        self.payload_summary = payload_summary

    def __str__(self) -> str:  # noqa: D105
        parts = [super().__str__()]
        if self.status_code is not None:
            parts.append(f"  HTTP {self.status_code}")
        if self.endpoint:
            parts.append(f"  Endpoint: {self.endpoint}")
        if self.response_body:
            parts.append(f"  Response: {self.response_body[:500]}")
        if self.payload_summary:
            parts.append(f"  Payload keys: {list(self.payload_summary.keys())}")
        return "\n".join(parts)


class UploadCancelled(Exception):
    """Raised from inside an upload body when its task was removed."""


def _extract_error_detail(response: requests.Response) -> str:
    """Extract a human-readable error description from an HTTP response.

    FastAPI backends answer ``{"detail": ...}``; the storefront envelope
    answers ``{"message": ...}``.  Falls back to the raw text (truncated).
    """
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = body.get("detail") or body.get("error") or body.get("message")
            if isinstance(detail, list):
                # FastAPI validation errors: [{"loc": [...], "msg": "..."}]
                return "; ".join(
                    str(d.get("msg", d)) if isinstance(d, dict) else str(d)
                    for d in detail
                )
            if isinstance(detail, dict):
                return str(detail.get("message", detail))
            if detail:
                return str(detail)
        return response.text[:500]
    except Exception:  # noqa: BLE001
        return response.text[:500] if response.text else "(empty body)"


def _summarise_payload(payload: dict | None) -> dict | None:
    """Return a compact summary of a request payload for diagnostics."""
    if payload is None:
        return None
    summary = {}
    for k, v in payload.items():
        if k == "file_metadata" and isinstance(v, list):
            summary[k] = f"[{len(v)} files]"
        elif isinstance(v, str) and len(v) > 80:
            summary[k] = v[:80] + "…"
        else:
            summary[k] = v
    return summary


def _unwrap(body):
    """Return ``body["info"]`` when the backend envelope is present."""
    if isinstance(body, dict) and "info" in body:
        return body["info"]
    return body


class _ProgressBody:
    """Read-only body that reports how much of itself has been sent.

    ``requests`` takes the length from ``__len__`` (so the upload is not
    chunk-encoded) and the transport pulls data through ``read()``.
    Progress is capped at 99; 100 is reserved for a confirmed upload.
    """

    def __init__(
        self,
        body: bytes,
        on_progress: Callable[[int], None] | None = None,
        cancel: threading.Event | None = None,
        block_size: int = _UPLOAD_BLOCK_SIZE,
    ) -> None:
        self._body = body
        self._pos = 0
        self._on_progress = on_progress
        self._cancel = cancel
        self._block_size = block_size

    def __len__(self) -> int:
        return len(self._body)

    def __iter__(self):
        while True:
            chunk = self.read(self._block_size)
            if not chunk:
                return
            yield chunk

    def read(self, size: int = -1) -> bytes:
        if self._cancel is not None and self._cancel.is_set():
            raise UploadCancelled("upload cancelled")
        if size is None or size < 0:
            size = len(self._body) - self._pos
        chunk = self._body[self._pos:self._pos + size]
        self._pos += len(chunk)
        if chunk and self._on_progress is not None:
            total = len(self._body) or 1
            self._on_progress(min(99, self._pos * 100 // total))
        return chunk


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ChatAPIClient:
    """Thin wrapper around the assistant chat endpoints."""

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str | None],
        *,
        session: requests.Session | None = None,
        connect_timeout: float = 10.0,
        request_timeout: float = 30.0,
        upload_provider: str = "gemini-vision",
        on_unauthorized: Callable[[], None] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._session = session or requests.Session()
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._upload_provider = upload_provider
        self._on_unauthorized = on_unauthorized

    @property
    def base_url(self) -> str:
        return self._base_url

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _headers(self, **extra: str) -> dict:
        headers = {**_DEFAULT_HEADERS, **extra}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _check(self, response: requests.Response, url: str,
               payload: dict | None = None) -> None:
        """Raise :class:`StorefrontAPIError` for a non-2xx *response*."""
        if response.ok:
            return
        if response.status_code == 401:
            log.warning("[API] 401 from %s — token rejected.", url)
            if self._on_unauthorized is not None:
                self._on_unauthorized()
        detail = _extract_error_detail(response)
        raise StorefrontAPIError(
            f"Request failed (HTTP {response.status_code}).\n{detail}",
            status_code=response.status_code,
            endpoint=url,
            response_body=response.text[:500] if response.text else "",
            payload_summary=_summarise_payload(payload),
        )

    def _json(self, response: requests.Response, url: str):
        try:
            return _unwrap(response.json())
        except ValueError as exc:
            raise StorefrontAPIError(
                "Backend returned a non-JSON response.",
                status_code=response.status_code,
                endpoint=url,
                response_body=response.text[:500],
            ) from exc

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def open_stream(self, body: dict) -> requests.Response:
        """POST a chat request and return the open streaming response.

        The caller owns the response and must close it.  There is no read
        timeout: a stalled stream ends only by cancellation or transport
        close.
        """
        url = self._url(STREAM_PATH)
        log.debug("[API] POST %s  payload=%s", url, _summarise_payload(body))
        response = self._session.post(
            url,
            headers=self._headers(**{"Content-Type": "application/json",
                                     "Accept": "text/event-stream"}),
            json=body,
            stream=True,
            timeout=(self._connect_timeout, None),
        )
        try:
            self._check(response, url, body)
        except StorefrontAPIError:
            response.close()
            raise
        log.debug("[API] Stream opened — HTTP %s", response.status_code)
        return response

    def upload_file(
        self,
        file: SelectedFile,
        on_progress: Callable[[int], None] | None = None,
        cancel: threading.Event | None = None,
        query: str | None = None,
    ) -> FileDescriptor:
        """Upload one file and return its :class:`FileDescriptor`."""
        url = self._url(UPLOAD_PATH)
        fields: dict = {"file": (file.name, file.read(), file.mime_type)}
        if query:
            fields["query"] = query
        fields["provider_name"] = self._upload_provider
        body, content_type = encode_multipart_formdata(fields)

        log.debug("[UPLOAD] POST %s  file=%s  size=%d  mime=%s",
                  url, file.name, file.size, file.mime_type)
        response = self._session.post(
            url,
            headers=self._headers(**{"Content-Type": content_type}),
            data=_ProgressBody(body, on_progress, cancel),
            timeout=(self._connect_timeout, None),
        )
        summary = {"file": file.name, "provider_name": self._upload_provider}
        self._check(response, url, summary)
        info = self._json(response, url)
        if not isinstance(info, dict) or not info.get("file_id"):
            raise StorefrontAPIError(
                f"Upload of {file.name} returned no file_id.",
                status_code=response.status_code,
                endpoint=url,
                response_body=response.text[:500],
            )
        return FileDescriptor.from_wire(info)

    def get_messages(self, page: int = 1, page_size: int = 10) -> HistoryPage:
        """Fetch one history page; items come back oldest first."""
        url = self._url(MESSAGES_PATH)
        params = {"page": page, "page_size": page_size}
        log.debug("[API] GET %s  %s", url, params)
        response = self._session.get(
            url,
            headers=self._headers(),
            params=params,
            timeout=(self._connect_timeout, self._request_timeout),
        )
        self._check(response, url, params)
        info = self._json(response, url)
        data = info.get("data", info) if isinstance(info, dict) else None
        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise StorefrontAPIError(
                "Unexpected history format: expected 'info.data.messages'.",
                status_code=response.status_code,
                endpoint=url,
                response_body=response.text[:500],
            )
        # The backend returns newest first within a page.
        items = [Message.from_history(m) for m in reversed(data["messages"])]
        total_pages = int(data.get("total_pages") or 0)
        page_number = int(data.get("page") or page)
        return HistoryPage(
            page_number=page_number,
            page_size=int(data.get("page_size") or page_size),
            items=items,
            has_more=page_number < total_pages,
            total_pages=total_pages,
        )

    def delete_all_messages(self) -> int:
        """Delete the user's whole history; return the deleted count."""
        url = self._url(MESSAGES_PATH)
        log.debug("[API] DELETE %s", url)
        response = self._session.delete(
            url,
            headers=self._headers(),
            timeout=(self._connect_timeout, self._request_timeout),
        )
        self._check(response, url)
        info = self._json(response, url)
        if isinstance(info, dict):
            return int(info.get("deleted_count") or 0)
        return 0

    def close(self) -> None:
        self._session.close()
