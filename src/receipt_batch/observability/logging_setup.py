"""Logging configuration for the batch upload service.

``setup_logging()`` runs once at startup (see ``receipt_batch.main``) and
takes its level from ``LOG_LEVEL``:

    INFO     one line per batch and item event (default)
    DEBUG    adds admission decisions, ignored stage updates and late events
    WARNING  only failures, timeouts and cancellations
"""

from __future__ import annotations

import logging
import sys

# Loggers that follow LOG_LEVEL even when the root logger is tuned separately
APP_LOGGERS = (
    "batch_upload",
    "receipt_batch.services",
    "receipt_batch.adapters",
    "receipt_batch.application",
    "receipt_batch.api",
)

# Chatty transport and server loggers
QUIET_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "urllib3",
    "requests",
    "multipart",
)

_DEBUG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"


def get_log_level_from_settings() -> int:
    """Resolve ``settings.log_level`` to a logging constant, falling back to INFO."""
    from ..config import settings

    name = settings.log_level.strip().upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging() -> None:
    """Install a single stdout handler on the root logger.

    Safe to call more than once: existing root handlers are replaced.
    """
    level = get_log_level_from_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if level == logging.DEBUG:
        handler.setFormatter(logging.Formatter(_DEBUG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("batch_upload.startup").info("Logging configured at %s", logging.getLevelName(level))
