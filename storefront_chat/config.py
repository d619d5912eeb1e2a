"""
Runtime settings for the storefront chat client.

Settings are read from ``Asset/settings.json`` (see :mod:`.paths`) and may be
overridden per-process with ``STOREFRONT_*`` environment variables, e.g.
``STOREFRONT_API_BASE_URL=https://shop.example.com``.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, fields

from .paths import asset_path

log = logging.getLogger("storefront_chat")

SETTINGS_FILE_NAME = "settings.json"

_ENV_PREFIX = "STOREFRONT_"


@dataclass
class ChatSettings:
    """Tunable knobs for the streaming client and its collaborators."""

    api_base_url: str = "http://localhost:8000"
    collection_name: str = "chatbot-foxai"
    upload_provider: str = "gemini-vision"

    # Attachment limits applied before any upload starts.
    max_files: int = 5
    max_total_bytes: int = 200 * 1024 * 1024

    history_page_size: int = 10
    #: Distance (in viewport units) from the top that triggers "load more".
    near_top_threshold: float = 100.0

    #: Connect timeout for every request.  Streams have no read timeout.
    connect_timeout: float = 10.0
    #: Read timeout for plain (non-streaming) requests.
    request_timeout: float = 30.0

    artifact_identity_field: str = "id"
    log_level: str = "INFO"


def _coerce(raw: str, current):
    """Convert an environment string to the type of the default value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def load_settings(path: str | None = None, environ=None) -> ChatSettings:
    """Return settings from *path* (default ``Asset/settings.json``) + env.

    Unknown keys in the file are ignored so that older settings files keep
    working.  A malformed file is logged and skipped.
    """
    path = path or asset_path(SETTINGS_FILE_NAME)
    environ = os.environ if environ is None else environ
    settings = ChatSettings()
    known = {f.name for f in fields(ChatSettings)}

    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("[CONFIG] Ignoring unreadable settings file %s: %s", path, exc)
            data = {}
        if isinstance(data, dict):
            for key, value in data.items():
                if key in known:
                    setattr(settings, key, value)

    for name in known:
        raw = environ.get(_ENV_PREFIX + name.upper())
        if raw is None:
            continue
        try:
            setattr(settings, name, _coerce(raw, getattr(settings, name)))
        except ValueError:
            log.warning("[CONFIG] Bad value for %s%s: %r",
                        _ENV_PREFIX, name.upper(), raw)

    return settings


def save_settings(settings: ChatSettings, path: str | None = None) -> None:
    """Persist *settings* as JSON."""
    path = path or asset_path(SETTINGS_FILE_NAME)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(asdict(settings), fh, ensure_ascii=False, indent=2)
