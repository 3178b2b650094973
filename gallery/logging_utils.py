"""Logging setup for the gallery CLI and web server.

Records carry a ``request_id`` field. Inside a web request the
:class:`~gallery.web.server.ContextualLoggerAdapter` fills it with the
correlation id; everywhere else it renders as ``-``.
"""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, List


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s"
LOG_FILE_NAME = "gallery_media.log"
NO_REQUEST_ID = "-"


class RequestIdFilter(logging.Filter):
    """Guarantee every record has a ``request_id`` for the formatter."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = NO_REQUEST_ID
        return True


def get_log_file_path(storage_root: Path) -> Path:
    return storage_root / LOG_FILE_NAME


def build_log_handlers(storage_root: Path) -> List[logging.Handler]:
    """Return the file and console handlers used by the CLI."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
    stream_handler = logging.StreamHandler()
    handlers: List[logging.Handler] = [file_handler, stream_handler]
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(
    level: int = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None
) -> Logger:
    """Install *handlers* on the root logger, replacing ones from an earlier call."""

    logger = logging.getLogger()
    logger.setLevel(level)

    for existing in list(logger.handlers):
        if getattr(existing, "_gallery_handler", False):
            logger.removeHandler(existing)
            existing.close()

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    for handler in handlers:
        handler.addFilter(RequestIdFilter())
        setattr(handler, "_gallery_handler", True)
        logger.addHandler(handler)

    return logger


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_FILE_NAME",
    "RequestIdFilter",
    "build_log_handlers",
    "configure_logging",
    "get_log_file_path",
]
