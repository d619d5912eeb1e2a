"""
Storefront chat client — entry point.

Run with:
    python main.py
"""

import logging
import sys

# Require Python 3.10+ for the union-type hints used throughout the package.
if sys.version_info < (3, 10):
    sys.exit(
        "Python 3.10 or later is required.\n"
        f"You are running Python {sys.version_info.major}.{sys.version_info.minor}."
    )

from storefront_chat.config import load_settings  # noqa: E402
from storefront_chat.console import ConsoleChat  # noqa: E402
from storefront_chat.session import ConversationSession  # noqa: E402


def main() -> None:
    settings = load_settings()
    # ---------------------------------------------------------------------------
    # Logging — set STOREFRONT_LOG_LEVEL=DEBUG to see every request and frame.
    # ---------------------------------------------------------------------------
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    session = ConversationSession.create(settings)
    ConsoleChat(session).run()


if __name__ == "__main__":
    main()
