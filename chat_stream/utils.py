"""Logging helpers shared by the server entry points."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILENAME = "chat_stream.log"

# Handlers added to the root logger by the last setup_logging call.
_installed_handlers: List[logging.Handler] = []


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> None:
    """Configure console logging and, when ``log_dir`` is set, a rotating log file.

    Safe to call more than once: handlers installed by a previous call are
    replaced rather than duplicated.
    """
    root = logging.getLogger()
    root.setLevel(level)
    while _installed_handlers:
        handler = _installed_handlers.pop()
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    _installed_handlers.append(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path / LOG_FILENAME, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        _installed_handlers.append(file_handler)

    for handler in _installed_handlers:
        root.addHandler(handler)
    logging.getLogger(__name__).debug("Logging configured (log_dir=%s)", log_dir)
