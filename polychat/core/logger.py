"""Logging setup shared by the API server and the CLI.

Loggers are named ``polychat.<module>``. The level comes from
``POLYCHAT_LOG_LEVEL`` (default WARNING so the CLI stays quiet).
"""

import logging
import os
import sys

_CONFIGURED = False


def setup_logging(level: str | int | None = None) -> None:
    """Attach a single stderr handler to the ``polychat`` logger tree."""
    global _CONFIGURED

    if level is None:
        level = os.getenv("POLYCHAT_LOG_LEVEL", "WARNING").upper()
    if isinstance(level, str):
        level = logging.getLevelName(level)
        if not isinstance(level, int):
            level = logging.WARNING

    root = logging.getLogger("polychat")
    root.setLevel(level)

    if not _CONFIGURED:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%H:%M:%S")
        )
        root.addHandler(handler)
        _CONFIGURED = True

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    if not _CONFIGURED:
        setup_logging()
    return logging.getLogger(name)
