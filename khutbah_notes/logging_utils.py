"""Logging setup for the Khutbah Notes client core."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, List


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE_NAME = "khutbah_notes.log"

# httpx and httpcore log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: int = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None) -> Logger:
    """Configure the root logger, attaching a console handler unless *handlers* are given."""

    logger = logging.getLogger()
    logger.setLevel(level)

    installed = list(handlers) if handlers is not None else [logging.StreamHandler()]
    for handler in installed:
        if handler.formatter is None:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return logger


def get_log_file_path(storage_root: Path) -> Path:
    return storage_root / LOG_FILE_NAME


def build_cli_handlers(storage_root: Path, *, console_level: int = logging.WARNING) -> List[logging.Handler]:
    """Return a full-detail file handler and a quieter console handler."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
    file_handler.setFormatter(formatter)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    return [file_handler, console_handler]


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_FILE_NAME",
    "build_cli_handlers",
    "configure_logging",
    "get_log_file_path",
]
