from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from devswitch.services.paths import logs_dir

LOGGER_NAME = "devswitch"
_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def setup_logging(
    log_dir: Path | None = None,
    *,
    debug: bool | None = None,
    console: bool | None = None,
) -> logging.Logger:
    """Configure the package logger once; later calls return it unchanged."""
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    if debug is None:
        debug = _env_flag("DEVSWITCH_DEBUG")
    if console is None:
        console = _env_flag("DEVSWITCH_CONSOLE_LOG")
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)
    fmt = logging.Formatter(_FORMAT)

    directory = log_dir or logs_dir()
    try:
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            directory / "devswitch.log",
            maxBytes=2_000_000,
            backupCount=3,
            encoding="utf-8",
        )
    except OSError:
        file_handler = None
    if file_handler is not None:
        file_handler.setFormatter(fmt)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(fmt)
        stream.setLevel(level)
        logger.addHandler(stream)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger


def reset_logging() -> None:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
