"""
Bearer-token storage for the storefront backend.

Signing in happens elsewhere (the storefront's auth screens).  The chat
client only needs the current bearer token, which is cached on disk so that
subsequent launches can reuse it:

  1. ``STOREFRONT_TOKEN`` in the environment wins if set.
  2. Otherwise the token persisted in ``Asset/token.json`` is used.
  3. A 401 from the backend clears the cached token.
"""

import json
import logging
import os

from .paths import asset_path

log = logging.getLogger("storefront_chat")

TOKEN_FILE_NAME = "token.json"


def _token_file() -> str:
    return asset_path(TOKEN_FILE_NAME)


def save_token(token: str) -> None:
    """Persist the bearer token to disk."""
    with open(_token_file(), "w", encoding="utf-8") as fh:
        json.dump({"auth_token": token}, fh)
    log.debug("[AUTH] Token saved — len=%d  prefix=%s…", len(token), token[:8])


def load_token() -> str | None:
    """Load the bearer token from disk, returning ``None`` if absent."""
    path = _token_file()
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        return data.get("auth_token") or None
    return None


def delete_token() -> None:
    """Remove the cached bearer token from disk."""
    path = _token_file()
    if os.path.exists(path):
        os.remove(path)
        log.info("[AUTH] Cached token removed.")


class TokenProvider:
    """Zero-argument callable returning the current bearer token (or ``None``).

    The value is re-read on every call so that a token stored or cleared
    mid-session is picked up by the next request.
    """

    def __init__(self, environ=None) -> None:
        self._environ = os.environ if environ is None else environ

    def __call__(self) -> str | None:
        token = self._environ.get("STOREFRONT_TOKEN")
        if token:
            return token
        return load_token()

    def forget(self) -> None:
        """Drop the cached token (called on HTTP 401)."""
        delete_token()
