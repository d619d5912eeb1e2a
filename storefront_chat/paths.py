"""
Central path configuration for the storefront chat client.

All persistent files (cached bearer token, settings) are stored under the
``Asset/`` folder that lives alongside ``main.py`` (i.e. the project root),
regardless of the current working directory when the client is launched.
Set ``STOREFRONT_CHAT_HOME`` to keep them somewhere else.

Usage in other modules::

    from .paths import asset_path
    MY_FILE = asset_path("my_file.json")
"""

import os

# Project root = the directory that contains main.py
# This file lives in storefront_chat/, so we go one level up.
_PROJECT_ROOT: str = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def asset_dir() -> str:
    """Return the absolute path to the ``Asset/`` folder, creating it if needed."""
    path = os.environ.get("STOREFRONT_CHAT_HOME") or os.path.join(_PROJECT_ROOT, "Asset")
    os.makedirs(path, exist_ok=True)
    return path


def asset_path(filename: str) -> str:
    """Return the absolute path for *filename* inside the Asset folder."""
    return os.path.join(asset_dir(), filename)
