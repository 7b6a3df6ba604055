"""Logging helpers for the deployment orchestrator."""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

from deploy_orchestrator.config import Settings

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    """Send orchestrator logs to stderr and, if configured, a log file.

    Stdout stays reserved for command output.
    """
    level_name = "DEBUG" if verbose else settings.logging.level.upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    with _logging_lock:
        if settings.logging.file:
            try:
                Path(settings.logging.file).parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(settings.logging.file)
                file_handler.setFormatter(formatter)
                handlers.append(file_handler)
            except OSError as exc:
                _logger.warning("Failed to open log file %s: %s", settings.logging.file, exc)

        logging.basicConfig(level=level, handlers=handlers, force=True)
        # Request signing details stay out of the logs.
        logging.getLogger("botocore").setLevel(max(level, logging.INFO))
