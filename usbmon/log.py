"""Logging setup for usbmon.

Levels (ascending):
    TRACE =  5  — ignored lifecycle transitions, every worker task
    DEBUG = 10  — state changes, permission checks, reconciliation ticks
    INFO  = 20  — register/unregister, connects and disconnects (default)

Usage:
    import usbmon.log  # must be imported once before any logger is used
    logger = logging.getLogger(__name__)
    logger.trace("very noisy message")
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path

TRACE: int = 5
logging.addLevelName(TRACE, "TRACE")

DEFAULT_LOG_FILE = "~/.usbmon.log"
LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def _trace(self: logging.Logger, message: object, *args: object, **kwargs: object) -> None:
    if self.isEnabledFor(TRACE):
        self._log(TRACE, message, args, **kwargs)  # type: ignore[attr-defined]


# Patch Logger class once at import time
logging.Logger.trace = _trace  # type: ignore[attr-defined]


def setup_logging(debug: bool = False, log_file: str | None = None) -> logging.Logger:
    """Attach file and console handlers to the ``usbmon`` logger.

    Safe to call more than once: handlers are only added on the first call.

    Args:
        debug: Enable debug level logging on the console.
        log_file: Path to log file (default: ``~/.usbmon.log``).
    """
    logger = logging.getLogger("usbmon")
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if getattr(logger, "_usbmon_configured", False):
        return logger

    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    path = Path(os.path.expanduser(log_file or DEFAULT_LOG_FILE))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: Could not setup file logging: {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(fmt)
    logger.addHandler(console_handler)

    logger._usbmon_configured = True  # type: ignore[attr-defined]
    return logger
