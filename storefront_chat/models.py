"""
Data model shared by the streaming core.

Messages live in a plain ``list[Message]`` owned by the session; the
history pager prepends to it and the session appends to it.  The render
layer treats everything here as read-only snapshots.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .file_handler import SelectedFile


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id(prefix: str = "") -> str:
    return prefix + uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileDescriptor:
    """Server-side description of one successfully uploaded file."""

    file_id: str
    file_name: str
    file_type: str
    file_size: int
    storage_url: str = ""
    provider_name: str = ""
    extracted_text: str = ""

    @classmethod
    def from_wire(cls, info: dict) -> "FileDescriptor":
        """Build from an upload response's ``info`` object."""
        return cls(
            file_id=str(info.get("file_id", "")),
            file_name=info.get("file_name", ""),
            file_type=info.get("file_type", ""),
            file_size=int(info.get("file_size") or 0),
            storage_url=info.get("storage_url", "") or "",
            provider_name=info.get("provider_name", "") or "",
            extracted_text=info.get("markdown_content", "") or "",
        )

    def to_wire(self) -> dict:
        """Return the ``file_metadata`` entry sent with a chat request."""
        return {
            "file_id": self.file_id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "storage_url": self.storage_url,
            "provider_name": self.provider_name,
            "markdown_content": self.extracted_text,
        }


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    ERROR = "error"


@dataclass
class UploadTask:
    """One file attached to the next outgoing message."""

    file: "SelectedFile"
    id: str = field(default_factory=_new_id)
    descriptor: FileDescriptor | None = None
    progress: int = 0
    status: UploadStatus = UploadStatus.PENDING
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (UploadStatus.UPLOADED, UploadStatus.ERROR)

    @property
    def is_active(self) -> bool:
        return self.status in (UploadStatus.PENDING, UploadStatus.UPLOADING)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class Artifact:
    """Typed side payload (e.g. ``product_search_results``)."""

    type: str
    data: list = field(default_factory=list)
    tool: str | None = None
    metadata: dict | None = None

    @classmethod
    def from_wire(cls, raw: Any) -> "Artifact | None":
        """Build from an ``artifacts`` object; ``None`` if it carries nothing."""
        if not isinstance(raw, dict):
            return None
        data = raw.get("data")
        if not isinstance(data, list) or not data:
            return None
        metadata = raw.get("metadata")
        return cls(
            type=str(raw.get("type") or "unknown"),
            data=list(data),
            tool=raw.get("tool"),
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """A chat message.  Assistant content grows while its stream is open."""

    role: Role
    content: str = ""
    id: str = ""
    created_at: str = field(default_factory=_now)
    attachments: list[FileDescriptor] = field(default_factory=list)
    artifacts: list[Artifact] | None = None
    sealed: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            self.id = _new_id(f"{self.role.value}-")

    def append(self, text: str) -> None:
        if self.sealed:
            raise RuntimeError(f"message {self.id} is sealed")
        self.content += text

    def seal(self) -> None:
        self.sealed = True

    @classmethod
    def from_history(cls, raw: dict) -> "Message":
        """Build a sealed message from a ``/v1/messages`` entry."""
        role = Role.USER if raw.get("sender_type") == "user" else Role.ASSISTANT
        return cls(
            role=role,
            content=raw.get("content") or "",
            id=str(raw.get("id") or ""),
            created_at=raw.get("created_at") or _now(),
            artifacts=_artifacts_from_history(raw.get("artifacts")),
            sealed=True,
        )


def _artifacts_from_history(raw: Any) -> list[Artifact] | None:
    """History rows store a single artifact object, a list, or null."""
    if raw is None:
        return None
    items = raw if isinstance(raw, list) else [raw]
    artifacts = [a for a in (Artifact.from_wire(r) for r in items) if a]
    return artifacts or None


@dataclass
class HistoryPage:
    """One page of ``/v1/messages``; ``items`` are oldest first."""

    page_number: int
    page_size: int
    items: list[Message]
    has_more: bool
    total_pages: int = 0
