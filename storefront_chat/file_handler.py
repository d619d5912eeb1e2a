"""
Utilities for turning user-selected files into uploadable attachments.

Sources
-------
* **Picker / drag-drop** — a filesystem path; size is taken from ``stat`` and
  the bytes are read only when the upload actually starts.
* **Paste** — raw bytes already in memory (e.g. a clipboard screenshot).

The MIME type is guessed from the file name; images get an explicit table
because :mod:`mimetypes` misses ``.webp`` on some platforms.
"""

import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path

_IMAGE_MIME: dict[str, str] = {
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png":  "image/png",
    ".gif":  "image/gif",
    ".webp": "image/webp",
}

_FALLBACK_MIME = "application/octet-stream"


def guess_mime(file_name: str) -> str:
    """Return a MIME type for *file_name*."""
    ext = Path(file_name).suffix.lower()
    if ext in _IMAGE_MIME:
        return _IMAGE_MIME[ext]
    mime, _ = mimetypes.guess_type(file_name)
    return mime or _FALLBACK_MIME


@dataclass(frozen=True)
class SelectedFile:
    """A file chosen for upload, from disk or pasted bytes."""

    name: str
    size: int
    mime_type: str
    path: str | None = None
    content: bytes | None = None

    @classmethod
    def from_path(cls, file_path: str | os.PathLike) -> "SelectedFile":
        """Describe a file on disk.  Raises :exc:`OSError` if it is unreadable."""
        file_path = os.fspath(file_path)
        size = os.path.getsize(file_path)
        name = os.path.basename(file_path)
        return cls(name=name, size=size, mime_type=guess_mime(name), path=file_path)

    @classmethod
    def from_bytes(cls, name: str, content: bytes, mime_type: str | None = None) -> "SelectedFile":
        """Describe pasted content."""
        return cls(
            name=name,
            size=len(content),
            mime_type=mime_type or guess_mime(name),
            content=content,
        )

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def read(self) -> bytes:
        """Return the file's bytes."""
        if self.content is not None:
            return self.content
        with open(self.path, "rb") as fh:
            return fh.read()
